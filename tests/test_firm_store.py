"""
Tests for FirmStore decisions
=============================

The pool is faked (see conftest.py), so these cover the checks the store
makes around its SQL: headcount limits, owner bypass auditing, rank
authority, case status compare-and-set, closure rules, the atomic
application review and feedback eligibility.
"""

import datetime

import pytest

from firm_errors import CapacityExceeded, InvalidRoleChange, InvalidTransition, NotFound, PermissionDenied, ValidationFailed

GUILD = 10
HR = 1
MEMBER = 2


def staff_row(user_id, role, status="active"):
    return {"user_id": user_id, "role": role, "status": status, "roblox_username": f"user{user_id}"}


def case_row(status, **extra):
    row = {"id": 5, "case_number": "2024-0007-alice", "client_id": 99, "status": status,
           "assigned_lawyer_ids": [], "lead_attorney_id": None}
    row.update(extra)
    return row


def script_hire(conn, active_count):
    conn.on("SELECT status FROM staff", None)
    conn.on("lower(roblox_username)", None)
    conn.on("SELECT COUNT(*) FROM staff", active_count)
    conn.on("INSERT INTO staff (", lambda *args: {"user_id": args[1], "roblox_username": args[2], "role": args[3]})


# =============================================================================
# Hiring
# =============================================================================

class TestHire:

    @pytest.mark.asyncio
    async def test_hire_under_limit(self, store, conn):
        """A free seat hires, writes history and audits"""
        script_hire(conn, active_count=2)
        row = await store.hire_staff(GUILD, MEMBER, "Rookie_1", "Paralegal", HR)
        assert row["role"] == "Paralegal"
        assert conn.ran("pg_advisory_xact_lock")
        assert conn.ran("INSERT INTO staff_role_history")
        assert conn.audit_actions() == ["staff_hired"]

    @pytest.mark.asyncio
    async def test_hire_at_limit_rejected(self, store, conn):
        """The eleventh paralegal is refused and nothing is written"""
        script_hire(conn, active_count=10)
        with pytest.raises(CapacityExceeded):
            await store.hire_staff(GUILD, MEMBER, "Rookie_1", "Paralegal", HR)
        assert not conn.ran("INSERT INTO staff (")

    @pytest.mark.asyncio
    async def test_owner_bypass_is_audited(self, store, conn):
        """Going over the limit is allowed for the owner and leaves an audit entry"""
        script_hire(conn, active_count=1)
        await store.hire_staff(GUILD, MEMBER, "Boss_Man", "Managing Partner", HR, allow_over_capacity=True)
        assert conn.audit_actions() == ["role_limit_bypassed", "staff_hired"]

    @pytest.mark.asyncio
    async def test_already_active(self, store, conn):
        conn.on("SELECT status FROM staff", {"status": "active"})
        with pytest.raises(InvalidRoleChange):
            await store.hire_staff(GUILD, MEMBER, "Rookie_1", "Paralegal", HR)

    @pytest.mark.asyncio
    async def test_bad_roblox_username(self, store, conn):
        with pytest.raises(ValidationFailed):
            await store.hire_staff(GUILD, MEMBER, "no spaces", "Paralegal", HR)
        assert not conn.calls


# =============================================================================
# Promotion / demotion
# =============================================================================

class TestRankChange:

    def script(self, conn, target_role, actor_role, count=0):
        conn.on("SELECT * FROM staff WHERE", staff_row(MEMBER, target_role))
        conn.on("SELECT role FROM staff", actor_role)
        conn.on("SELECT COUNT(*) FROM staff", count)
        conn.on("UPDATE staff SET role", lambda *args: {"user_id": args[1], "role": args[2]})

    @pytest.mark.asyncio
    async def test_promote(self, store, conn):
        self.script(conn, "Paralegal", "Senior Partner")
        row = await store.promote_staff(GUILD, MEMBER, "Junior Associate", HR)
        assert row["role"] == "Junior Associate"
        assert conn.audit_actions() == ["staff_promoted"]

    @pytest.mark.asyncio
    async def test_promote_into_full_rank(self, store, conn):
        self.script(conn, "Junior Partner", "Managing Partner", count=3)
        with pytest.raises(CapacityExceeded):
            await store.promote_staff(GUILD, MEMBER, "Senior Partner", HR)
        assert not conn.ran("UPDATE staff SET role")

    @pytest.mark.asyncio
    async def test_demotion_skips_capacity(self, store, conn):
        self.script(conn, "Senior Associate", "Senior Partner", count=10)
        row = await store.demote_staff(GUILD, MEMBER, "Paralegal", HR)
        assert row["role"] == "Paralegal"
        assert not conn.ran("SELECT COUNT(*) FROM staff")

    @pytest.mark.asyncio
    async def test_junior_actor_denied(self, store, conn):
        self.script(conn, "Paralegal", "Junior Partner")
        with pytest.raises(PermissionDenied):
            await store.promote_staff(GUILD, MEMBER, "Junior Associate", HR)

    @pytest.mark.asyncio
    async def test_admin_override(self, store, conn):
        self.script(conn, "Paralegal", None)
        row = await store.promote_staff(GUILD, MEMBER, "Junior Associate", HR, override=True)
        assert row["role"] == "Junior Associate"

    @pytest.mark.asyncio
    async def test_wrong_direction(self, store, conn):
        self.script(conn, "Senior Associate", "Managing Partner")
        with pytest.raises(InvalidRoleChange):
            await store.promote_staff(GUILD, MEMBER, "Paralegal", HR)

    @pytest.mark.asyncio
    async def test_self_change(self, store, conn):
        with pytest.raises(InvalidRoleChange):
            await store.promote_staff(GUILD, HR, "Senior Partner", HR)
        assert not conn.calls


# =============================================================================
# Cases
# =============================================================================

class TestCases:

    @pytest.mark.asyncio
    async def test_create_case_numbers_from_counter(self, store, conn):
        conn.on("INSERT INTO case_counters", 7)
        conn.on("INSERT INTO cases", lambda *args: {"case_number": args[1], "channel_name": args[8], "status": args[6]})
        row = await store.create_case(GUILD, 99, "alice", "Contract dispute", "They broke the deal")
        year = datetime.datetime.now(datetime.timezone.utc).year
        assert conn.ran("INSERT INTO case_counters")[0] == (GUILD, year)
        assert row["case_number"] == f"{year}-0007-alice"
        assert row["channel_name"] == f"case-{year}-0007-alice"
        assert row["status"] == "pending"

    @pytest.mark.asyncio
    async def test_accept_pending(self, store, conn):
        conn.on("SELECT * FROM cases WHERE", case_row("pending"))
        conn.on("UPDATE cases SET status", case_row("open", lead_attorney_id=HR))
        row = await store.accept_case(GUILD, 5, HR)
        assert row["status"] == "open"
        update = conn.ran("UPDATE cases SET status")[0]
        assert update[2:5] == ("pending", "open", HR)

    @pytest.mark.asyncio
    async def test_lost_race_reports_latest_status(self, store, conn, seq):
        """The status changed between read and write, so the update matches nothing"""
        conn.on("SELECT * FROM cases WHERE", seq(case_row("pending"), case_row("open")))
        conn.on("UPDATE cases SET status", None)
        with pytest.raises(InvalidTransition) as exc:
            await store.accept_case(GUILD, 5, HR)
        assert exc.value.current == "open"

    @pytest.mark.asyncio
    async def test_backward_move_rejected(self, store, conn):
        conn.on("SELECT * FROM cases WHERE", case_row("in-progress"))
        with pytest.raises(InvalidTransition):
            await store.update_case_status(GUILD, 5, "open", HR)
        assert not conn.ran("UPDATE cases")

    @pytest.mark.asyncio
    async def test_status_cannot_close(self, store, conn):
        with pytest.raises(ValidationFailed):
            await store.update_case_status(GUILD, 5, "closed", HR)

    @pytest.mark.asyncio
    async def test_missing_case(self, store, conn):
        with pytest.raises(NotFound):
            await store.update_case_status(GUILD, 5, "open", HR)

    @pytest.mark.asyncio
    async def test_close_from_in_progress(self, store, conn):
        conn.on("SELECT * FROM cases WHERE", case_row("in-progress"))
        conn.on("UPDATE cases SET status", case_row("closed", result="win"))
        row = await store.close_case(GUILD, 5, "win", HR, "Judge agreed")
        assert row["status"] == "closed"
        args = conn.ran("UPDATE cases SET status")[0]
        assert args[2:5] == ("closed", "win", "Judge agreed")
        assert set(args[6]) == {"open", "in-progress"}
        assert conn.audit_actions() == ["case_closed"]

    @pytest.mark.asyncio
    async def test_close_pending_rejected(self, store, conn):
        conn.on("SELECT * FROM cases WHERE", case_row("pending"))
        with pytest.raises(InvalidTransition):
            await store.close_case(GUILD, 5, "dismissed", HR)
        assert not conn.ran("UPDATE cases")

    @pytest.mark.asyncio
    async def test_assign_to_closed_rejected(self, store, conn):
        conn.on("SELECT * FROM cases WHERE", case_row("closed"))
        with pytest.raises(ValidationFailed):
            await store.assign_lawyer(GUILD, 5, MEMBER, HR)


# =============================================================================
# Applications
# =============================================================================

class TestApplicationReview:

    def application(self, status="pending"):
        return {"id": 3, "applicant_id": MEMBER, "roblox_username": "Hopeful_1", "staff_role": "Paralegal",
                "job_title": "Paralegal", "status": status}

    @pytest.mark.asyncio
    async def test_accept_hires_in_same_transaction(self, store, conn):
        conn.on("FROM job_applications a", self.application())
        conn.on("UPDATE job_applications", {"id": 3, "applicant_id": MEMBER, "status": "accepted"})
        script_hire(conn, active_count=0)
        row, staff = await store.review_application(GUILD, 3, HR, approved=True)
        assert row["status"] == "accepted"
        assert staff["user_id"] == MEMBER and staff["role"] == "Paralegal"
        statements = [sql for sql, _ in conn.calls]
        assert "FOR UPDATE" in statements[0]
        hire_at = next(i for i, sql in enumerate(statements) if "INSERT INTO staff (" in sql)
        review_at = next(i for i, sql in enumerate(statements) if "UPDATE job_applications" in sql)
        assert hire_at < review_at

    @pytest.mark.asyncio
    async def test_already_reviewed_hires_nobody(self, store, conn):
        conn.on("FROM job_applications a", self.application(status="accepted"))
        with pytest.raises(NotFound):
            await store.review_application(GUILD, 3, HR, approved=True)
        assert not conn.ran("INSERT INTO staff (")

    @pytest.mark.asyncio
    async def test_failed_hire_leaves_application_pending(self, store, conn):
        conn.on("FROM job_applications a", self.application())
        script_hire(conn, active_count=10)
        with pytest.raises(CapacityExceeded):
            await store.review_application(GUILD, 3, HR, approved=True)
        assert not conn.ran("UPDATE job_applications")

    @pytest.mark.asyncio
    async def test_reject(self, store, conn):
        conn.on("FROM job_applications a", self.application())
        conn.on("UPDATE job_applications", {"id": 3, "applicant_id": MEMBER, "status": "rejected"})
        row, staff = await store.review_application(GUILD, 3, HR, approved=False, reason="Not now")
        assert staff is None
        assert not conn.ran("INSERT INTO staff (")
        assert conn.audit_actions() == ["application_rejected"]


# =============================================================================
# Feedback
# =============================================================================

class TestFeedback:

    @pytest.mark.asyncio
    async def test_staff_cannot_submit(self, store, conn):
        conn.on("SELECT * FROM staff WHERE", staff_row(MEMBER, "Paralegal"))
        with pytest.raises(ValidationFailed, match="Staff members cannot submit feedback"):
            await store.submit_feedback(GUILD, MEMBER, "member", 5, "Great service all around")

    @pytest.mark.asyncio
    async def test_target_must_be_staff(self, store, conn):
        with pytest.raises(NotFound):
            await store.submit_feedback(GUILD, 99, "client", 4, "Helpful and quick", target_staff_id=MEMBER)

    @pytest.mark.asyncio
    async def test_submit(self, store, conn):
        conn.on("SELECT * FROM staff WHERE", lambda guild_id, user_id: staff_row(user_id, "Paralegal") if user_id == MEMBER else None)
        conn.on("INSERT INTO feedback", lambda *args: {"id": 1, "rating": args[4], "comment": args[5]})
        row = await store.submit_feedback(GUILD, 99, "client", 4, "  Helpful and quick  ", target_staff_id=MEMBER)
        assert row["comment"] == "Helpful and quick"
        assert conn.audit_actions() == ["feedback_submitted"]

    @pytest.mark.asyncio
    async def test_bad_rating(self, store, conn):
        with pytest.raises(ValidationFailed):
            await store.submit_feedback(GUILD, 99, "client", 6, "Far too generous")

    @pytest.mark.asyncio
    async def test_summary(self, store, conn):
        conn.on("SELECT rating, COUNT(*)", [{"rating": 5, "cnt": 3}, {"rating": 2, "cnt": 1}])
        summary = await store.feedback_summary(GUILD)
        assert summary.total == 4
        assert summary.average == 4.25
        assert summary.distribution[1] == 0
