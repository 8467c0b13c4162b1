class FirmError(Exception):
    """Base for errors whose message is safe to show the member who ran the command."""


class UnknownRole(FirmError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown staff role: {value!r}")


class CapacityExceeded(FirmError):
    def __init__(self, role, current: int, maximum: int):
        self.role = role
        self.current = current
        self.maximum = maximum
        name = getattr(role, "value", role)
        super().__init__(f"The firm already has {current}/{maximum} {name}(s).")


class InvalidRoleChange(FirmError):
    pass


class InvalidTransition(FirmError):
    def __init__(self, current, new):
        self.current = current
        self.new = new
        super().__init__(
            f"Case status cannot move from **{getattr(current, 'value', current)}** "
            f"to **{getattr(new, 'value', new)}**."
        )


class PermissionDenied(FirmError):
    pass


class NotFound(FirmError):
    pass


class ValidationFailed(FirmError):
    pass
