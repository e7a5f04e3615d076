import pytest

from database import ACCOUNTS
from errors import Forbidden, InvariantViolation, NotFound, ValidationError
from tests.conftest import identity_for


class TestRegisterOrFetch:
    def test_creates_student_by_default(self, accounts, db):
        user = accounts.register_or_fetch(identity_for("amina@example.com"), {"name": "Amina", "phone": "0171"})

        assert user["email"] == "amina@example.com"
        assert user["role"] == "student"
        assert user["uid"] == "uid-amina"
        assert db[ACCOUNTS].count_documents({}) == 1

    def test_second_call_returns_same_account(self, accounts, db):
        first = accounts.register_or_fetch(identity_for("amina@example.com"), {"name": "Amina", "phone": "0171"})
        second = accounts.register_or_fetch(identity_for("amina@example.com"), {"name": "Other", "phone": "0999"})

        assert second["id"] == first["id"]
        assert second["name"] == "Amina"
        assert db[ACCOUNTS].count_documents({"email": "amina@example.com"}) == 1

    def test_existing_account_needs_no_profile(self, accounts):
        accounts.register_or_fetch(identity_for("amina@example.com"), {"name": "Amina", "phone": "0171"})
        again = accounts.register_or_fetch(identity_for("amina@example.com"), None)
        assert again["name"] == "Amina"

    @pytest.mark.parametrize("profile", [{"phone": "0171"}, {"name": "Amina"}, {}])
    def test_missing_fields_rejected(self, accounts, profile):
        with pytest.raises(ValidationError):
            accounts.register_or_fetch(identity_for("amina@example.com"), profile)

    def test_cannot_self_assign_admin(self, accounts):
        with pytest.raises(ValidationError):
            accounts.register_or_fetch(identity_for("x@example.com"), {"name": "X", "phone": "1", "role": "admin"})

    def test_role_spelling_is_normalized(self, accounts):
        user = accounts.register_or_fetch(identity_for("x@example.com"), {"name": "X", "phone": "1", "role": "Student"})
        assert user["role"] == "student"


class TestGetRole:
    def test_known_account(self, accounts, make_account):
        make_account("t@example.com", role="tutor")
        assert accounts.get_role("t@example.com") == "tutor"

    def test_unknown_email_gets_default_role(self, accounts):
        assert accounts.get_role("nobody@example.com") == "user"


class TestChangeRole:
    def test_admin_promotes_user(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        target = make_account("s@example.com")

        updated = accounts.change_role("admin@example.com", target, "admin")
        assert updated["role"] == "admin"
        assert accounts.count_admins() == 2

    def test_non_admin_is_forbidden(self, accounts, make_account):
        make_account("s@example.com")
        target = make_account("other@example.com")
        with pytest.raises(Forbidden):
            accounts.change_role("s@example.com", target, "tutor")

    def test_unknown_actor_is_forbidden(self, accounts, make_account):
        target = make_account("other@example.com")
        with pytest.raises(Forbidden):
            accounts.change_role("ghost@example.com", target, "tutor")

    def test_unknown_role_rejected(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        target = make_account("s@example.com")
        with pytest.raises(ValidationError):
            accounts.change_role("admin@example.com", target, "superuser")

    def test_missing_target(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        with pytest.raises(NotFound):
            accounts.change_role("admin@example.com", "5f0000000000000000000000", "tutor")

    def test_malformed_target_id(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        with pytest.raises(ValidationError):
            accounts.change_role("admin@example.com", "not-an-id", "tutor")

    def test_admin_cannot_demote_self_even_with_other_admins(self, accounts, make_account):
        me = make_account("admin@example.com", role="admin")
        make_account("admin2@example.com", role="admin")

        with pytest.raises(InvariantViolation):
            accounts.change_role("admin@example.com", me, "user")
        assert accounts.get_role("admin@example.com") == "admin"

    def test_other_admin_can_be_demoted_when_two_exist(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        other = make_account("admin2@example.com", role="admin")

        updated = accounts.change_role("admin@example.com", other, "tutor")
        assert updated["role"] == "tutor"
        assert accounts.count_admins() == 1

    def test_last_admin_is_never_removed(self, accounts, make_account, db):
        make_account("admin@example.com", role="admin")
        other = make_account("admin2@example.com", role="admin")
        accounts.change_role("admin@example.com", other, "user")

        # admin2 is no longer an admin and cannot act; admin cannot demote themselves
        with pytest.raises(Forbidden):
            accounts.change_role("admin2@example.com", other, "admin")
        assert db[ACCOUNTS].count_documents({"role": "admin"}) == 1

    def test_same_role_is_a_no_op(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        target = make_account("t@example.com", role="tutor")
        assert accounts.change_role("admin@example.com", target, "Tutor")["role"] == "tutor"


class TestDeleteAccount:
    def test_admin_deletes_student(self, accounts, make_account, db):
        make_account("admin@example.com", role="admin")
        target = make_account("s@example.com")

        assert accounts.delete_account("admin@example.com", target) == {"deletedCount": 1}
        assert db[ACCOUNTS].count_documents({"email": "s@example.com"}) == 0

    def test_non_admin_cannot_delete(self, accounts, make_account):
        make_account("s@example.com")
        target = make_account("other@example.com")
        with pytest.raises(Forbidden):
            accounts.delete_account("s@example.com", target)

    def test_cannot_delete_self(self, accounts, make_account):
        me = make_account("admin@example.com", role="admin")
        make_account("admin2@example.com", role="admin")
        with pytest.raises(InvariantViolation):
            accounts.delete_account("admin@example.com", me)

    def test_admin_count_never_drops_below_one(self, accounts, make_account, db):
        make_account("admin@example.com", role="admin")
        other = make_account("admin2@example.com", role="admin")

        accounts.delete_account("admin@example.com", other)
        assert db[ACCOUNTS].count_documents({"role": "admin"}) == 1


class TestProfile:
    def test_update_profile_only_touches_profile_fields(self, accounts, make_account):
        make_account("s@example.com")
        updated = accounts.update_profile("s@example.com", {"name": "New Name", "role": "admin"})
        assert updated["name"] == "New Name"
        assert updated["role"] == "student"

    def test_empty_update_rejected(self, accounts, make_account):
        make_account("s@example.com")
        with pytest.raises(ValidationError):
            accounts.update_profile("s@example.com", {})

    def test_list_accounts_is_admin_only(self, accounts, make_account):
        make_account("admin@example.com", role="admin")
        make_account("s@example.com")
        assert len(accounts.list_accounts("admin@example.com")) == 2
        with pytest.raises(Forbidden):
            accounts.list_accounts("s@example.com")
