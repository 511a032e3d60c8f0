"""
Seeding staff users and the sample menu, run repeatedly against the same database.
"""
from auth import pwd_context
from database import get_documents
from seed import seed_menu, seed_users


class TestSeedUsers:
    def test_second_run_creates_nothing(self, db):
        assert seed_users(db, "s3cret!") == 2
        assert seed_users(db, "s3cret!") == 0

        assert len(get_documents(db, "user")) == 2

    def test_existing_password_is_kept(self, db):
        seed_users(db, "s3cret!")
        seed_users(db, "changed")

        chef = get_documents(db, "user", {"email": "chef@tableorder.app"})[0]
        assert chef["role"] == "chef"
        assert pwd_context.verify("s3cret!", chef["passwordHash"])


class TestSeedMenu:
    def test_second_run_creates_nothing(self, db):
        assert seed_menu(db) == 4
        assert seed_menu(db) == 0

        assert len(get_documents(db, "fooditem")) == 4

    def test_existing_items_are_skipped(self, db, menu):
        """The fixture menu already holds Masala Dosa; only the other three are added."""
        assert seed_menu(db) == 3

        dosas = get_documents(db, "fooditem", {"name": "Masala Dosa"})
        assert len(dosas) == 1
        assert dosas[0]["_id"] == menu["dosa"]
