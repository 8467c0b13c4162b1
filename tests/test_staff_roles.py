"""
Tests for the staff rank ladder
===============================

Covers role lookups, headcount limits, promotion/demotion authority and
the username check used when hiring.
"""

import pytest

from firm_errors import CapacityExceeded, InvalidRoleChange, PermissionDenied, UnknownRole, ValidationFailed
from staff_roles import (
    ROLE_HIERARCHY,
    StaffRole,
    all_roles,
    all_roles_by_level_descending,
    authorize_role_change,
    can_demote,
    can_promote,
    check_capacity,
    coerce_role,
    is_valid_role,
    level,
    max_headcount,
    next_promotion,
    rank_role_changes,
    previous_demotion,
    validate_demotion,
    validate_promotion,
    validate_roblox_username,
)


# =============================================================================
# Lookups
# =============================================================================

class TestLookups:

    def test_levels_and_caps(self):
        """Each rank has its fixed level and headcount cap"""
        assert level("Managing Partner") == 6
        assert max_headcount("Managing Partner") == 1
        assert level(StaffRole.SENIOR_PARTNER) == 5
        assert max_headcount(StaffRole.SENIOR_PARTNER) == 3
        assert max_headcount(StaffRole.JUNIOR_PARTNER) == 5
        assert level("Paralegal") == 1
        assert max_headcount("Paralegal") == 10

    def test_levels_are_unique(self):
        levels = [rank.level for rank in ROLE_HIERARCHY.values()]
        assert sorted(levels) == [1, 2, 3, 4, 5, 6]

    def test_is_valid_role(self):
        assert is_valid_role("Senior Associate")
        assert is_valid_role(StaffRole.PARALEGAL)
        assert not is_valid_role("Intern")
        assert not is_valid_role("senior associate")
        assert not is_valid_role(None)
        assert not is_valid_role(3)

    def test_coerce_unknown_role_raises(self):
        with pytest.raises(UnknownRole):
            coerce_role("Intern")
        with pytest.raises(UnknownRole):
            level("Intern")

    def test_all_roles(self):
        assert len(all_roles()) == 6
        ordered = all_roles_by_level_descending()
        assert ordered[0] == StaffRole.MANAGING_PARTNER
        assert ordered[-1] == StaffRole.PARALEGAL
        assert [level(r) for r in ordered] == [6, 5, 4, 3, 2, 1]


# =============================================================================
# Ladder
# =============================================================================

class TestLadder:

    def test_next_promotion(self):
        assert next_promotion("Paralegal") == StaffRole.JUNIOR_ASSOCIATE
        assert next_promotion("Junior Partner") == StaffRole.SENIOR_PARTNER
        assert next_promotion("Managing Partner") is None

    def test_previous_demotion(self):
        assert previous_demotion("Junior Associate") == StaffRole.PARALEGAL
        assert previous_demotion("Managing Partner") == StaffRole.SENIOR_PARTNER
        assert previous_demotion("Paralegal") is None

    def test_demote_then_promote_returns_to_start(self):
        for role in StaffRole:
            below = previous_demotion(role)
            if below is not None:
                assert next_promotion(below) == role
            above = next_promotion(role)
            if above is not None:
                assert previous_demotion(above) == role

    def test_senior_partner_can_promote_lower_ranks(self):
        assert can_promote("Senior Partner", "Junior Partner")
        assert can_promote("Senior Partner", "Paralegal")

    def test_cannot_promote_peer_or_superior(self):
        assert not can_promote("Senior Partner", "Senior Partner")
        assert not can_promote("Senior Partner", "Managing Partner")

    def test_below_senior_partner_cannot_promote(self):
        assert not can_promote("Junior Partner", "Paralegal")
        assert not can_promote("Paralegal", "Paralegal")

    def test_managing_partner_can_promote_everyone_else(self):
        for role in StaffRole:
            assert can_promote("Managing Partner", role) == (role != StaffRole.MANAGING_PARTNER)

    def test_can_demote_mirrors_can_promote(self):
        # Demotion authority deliberately uses the promotion predicate for now.
        for actor in StaffRole:
            for target in StaffRole:
                assert can_demote(actor, target) == can_promote(actor, target)


# =============================================================================
# Validators
# =============================================================================

class TestValidators:

    def test_capacity_below_limit(self):
        check_capacity("Senior Partner", 2)

    def test_capacity_at_limit(self):
        with pytest.raises(CapacityExceeded) as exc:
            check_capacity("Managing Partner", 1)
        assert exc.value.maximum == 1
        assert "1/1 Managing Partner" in str(exc.value)

    def test_validate_promotion(self):
        validate_promotion("Paralegal", "Senior Associate")
        with pytest.raises(InvalidRoleChange):
            validate_promotion("Senior Associate", "Senior Associate")
        with pytest.raises(InvalidRoleChange):
            validate_promotion("Senior Associate", "Paralegal")

    def test_validate_demotion(self):
        validate_demotion("Junior Partner", "Paralegal")
        with pytest.raises(InvalidRoleChange):
            validate_demotion("Paralegal", "Junior Partner")

    def test_authorize_needs_active_staff(self):
        with pytest.raises(PermissionDenied, match="Only active senior staff"):
            authorize_role_change(None, "Paralegal")

    def test_authorize_rejects_peer(self):
        with pytest.raises(PermissionDenied, match="cannot demote"):
            authorize_role_change("Senior Partner", "Senior Partner", demotion=True)

    def test_authorize_override(self):
        authorize_role_change(None, "Managing Partner", override=True)
        authorize_role_change("Paralegal", "Senior Partner", override=True)

    @pytest.mark.parametrize("name", ["abc", "Player_One", "x1234567890123456789"])
    def test_roblox_username_ok(self, name):
        assert validate_roblox_username(f"  {name} ") == name

    @pytest.mark.parametrize("name", ["ab", "has space", "dash-name", "_lead", "trail_", "a" * 21, ""])
    def test_roblox_username_rejected(self, name):
        with pytest.raises(ValidationFailed):
            validate_roblox_username(name)


# =============================================================================
# Discord rank roles
# =============================================================================

class TestRankRoleChanges:

    def test_in_sync(self):
        assert rank_role_changes("Paralegal", ["@everyone", "Paralegal"]) == ([], [])

    def test_missing_rank_role(self):
        assert rank_role_changes("Senior Partner", ["Client"]) == ([StaffRole.SENIOR_PARTNER], [])

    def test_stale_rank_roles_removed(self):
        to_add, to_remove = rank_role_changes("Junior Partner", ["senior associate", "Junior Partner", "Paralegal"])
        assert to_add == []
        assert to_remove == [StaffRole.SENIOR_ASSOCIATE, StaffRole.PARALEGAL]

    def test_former_staff_lose_all_ranks(self):
        assert rank_role_changes(None, ["Paralegal", "Client"]) == ([], [StaffRole.PARALEGAL])
