from unittest.mock import patch

import pytest
from pymongo.errors import PyMongoError

from errors import Conflict, Forbidden, NotFound, ValidationError

TUTOR = {
    "name": "Rahim",
    "qualifications": "BSc Physics, DU",
    "experience": "3 years",
    "subjects": ["Physics", "Math"],
    "class_levels": ["9", "10"],
    "location": "Mirpur, Dhaka",
    "expected_salary": 6000,
}


class TestTutorProfiles:
    def test_register_starts_pending(self, services):
        profile = services.tutors.register("rahim@example.com", TUTOR)
        assert profile["status"] == "pending"
        assert profile["email"] == "rahim@example.com"

    def test_one_profile_per_email(self, services):
        services.tutors.register("rahim@example.com", TUTOR)
        with pytest.raises(Conflict):
            services.tutors.register("Rahim@example.com", TUTOR)

    def test_missing_qualifications_rejected(self, services):
        with pytest.raises(ValidationError):
            services.tutors.register("rahim@example.com", {"name": "Rahim"})

    def test_query_filters(self, services):
        services.tutors.register("rahim@example.com", TUTOR)
        services.tutors.register("karim@example.com", dict(TUTOR, subjects=["English"], location="Chittagong"))

        assert len(services.tutors.query(subject="Physics")) == 1
        assert len(services.tutors.query(location="dhaka")) == 1
        assert len(services.tutors.query(status="pending")) == 2
        assert services.tutors.query(status="approved") == []

    def test_only_owner_or_admin_updates(self, services, make_account):
        profile = services.tutors.register("rahim@example.com", TUTOR)
        make_account("admin@example.com", role="admin")

        with pytest.raises(Forbidden):
            services.tutors.update("karim@example.com", profile["id"], {"experience": "10 years"})
        assert services.tutors.update("rahim@example.com", profile["id"], {"experience": "4 years"})["experience"] == "4 years"
        assert services.tutors.update("admin@example.com", profile["id"], {"location": "Uttara"})["location"] == "Uttara"

    def test_null_fields_do_not_erase_profile(self, services):
        profile = services.tutors.register("rahim@example.com", TUTOR)
        updated = services.tutors.update(
            "rahim@example.com", profile["id"], {"name": None, "qualifications": None, "location": "Uttara"}
        )
        assert updated["name"] == "Rahim"
        assert updated["qualifications"] == "BSc Physics, DU"
        assert updated["location"] == "Uttara"

    def test_delete_missing_profile(self, services):
        with pytest.raises(NotFound):
            services.tutors.delete("rahim@example.com", "5f0000000000000000000000")


class TestApproveTutor:
    def test_approval_promotes_account(self, services, make_account):
        make_account("admin@example.com", role="admin")
        make_account("rahim@example.com", role="student")
        profile = services.tutors.register("rahim@example.com", TUTOR)

        result = services.tutors.approve_tutor("admin@example.com", profile["id"], "approved")

        assert result["status"] == "approved"
        assert result["roleUpdated"] is True
        assert services.accounts.get_role("rahim@example.com") == "tutor"
        assert [t["id"] for t in services.tutors.latest()] == [profile["id"]]

    def test_rejection_leaves_role_alone(self, services, make_account):
        make_account("admin@example.com", role="admin")
        make_account("rahim@example.com", role="student")
        profile = services.tutors.register("rahim@example.com", TUTOR)

        services.tutors.approve_tutor("admin@example.com", profile["id"], "rejected")
        assert services.accounts.get_role("rahim@example.com") == "student"

    def test_approval_without_account_still_succeeds(self, services, make_account):
        make_account("admin@example.com", role="admin")
        profile = services.tutors.register("rahim@example.com", TUTOR)

        result = services.tutors.approve_tutor("admin@example.com", profile["id"], "approved")
        assert result["status"] == "approved"
        assert result["roleUpdated"] is False

    def test_approval_survives_account_write_failure(self, services, make_account):
        make_account("admin@example.com", role="admin")
        make_account("rahim@example.com")
        profile = services.tutors.register("rahim@example.com", TUTOR)

        with patch.object(services.accounts, "promote_to_tutor", side_effect=PyMongoError("boom")):
            result = services.tutors.approve_tutor("admin@example.com", profile["id"], "approved")

        assert result["status"] == "approved"
        assert result["roleUpdated"] is False

    def test_admin_only(self, services, make_account):
        make_account("rahim@example.com")
        profile = services.tutors.register("rahim@example.com", TUTOR)
        with pytest.raises(Forbidden):
            services.tutors.approve_tutor("rahim@example.com", profile["id"], "approved")

    def test_unknown_status(self, services, make_account):
        make_account("admin@example.com", role="admin")
        profile = services.tutors.register("rahim@example.com", TUTOR)
        with pytest.raises(ValidationError):
            services.tutors.approve_tutor("admin@example.com", profile["id"], "maybe")
