"""
Pytest suite for database_manager.py.
Focus: clients and memberships, user lifecycle, per-resource authorizations, global scopes.
"""
import pytest

from database_manager import DatabaseManager, NotFoundError


# --- Clients and resources ---


class TestClients:
    def test_add_and_list_ordered_by_name(self, db: DatabaseManager):
        db.add_client("Zeta")
        db.add_client("Acme")
        assert [c["name"] for c in db.list_clients()] == ["Acme", "Zeta"]
        assert db.has_any_client()

    def test_client_name_required_and_unique(self, db: DatabaseManager):
        with pytest.raises(ValueError):
            db.add_client("   ")
        db.add_client("Acme")
        with pytest.raises(ValueError):
            db.add_client("Acme")

    def test_get_missing_client(self, db: DatabaseManager):
        with pytest.raises(NotFoundError):
            db.get_client(404)

    def test_project_needs_existing_client(self, db: DatabaseManager):
        with pytest.raises(NotFoundError):
            db.add_project(99, "Orphan")


# --- Users ---


class TestUsers:
    def test_create_user_joins_and_authorizes(self, db: DatabaseManager):
        """A user created for a client is a member and authorized on it."""
        acme = db.add_client("Acme")
        user = db.create_user("  Dave@Acme.Test ", client_id=acme.id, contact_name="Dave")
        assert user["email"] == "dave@acme.test"
        assert user["client_ids"] == [acme.id]
        assert db.authorized_users("clients", acme.id, acme.id) == [{"id": user["id"], "authorized": True}]

    def test_create_user_without_authorization(self, db: DatabaseManager):
        acme = db.add_client("Acme")
        user = db.create_user("erin@acme.test", client_id=acme.id, authorize=False)
        assert db.authorized_users("clients", acme.id, acme.id) == [{"id": user["id"], "authorized": False}]
        assert db.user_authorizations(user["id"]) == []

    @pytest.mark.parametrize("email", ["", "not-an-email", None])
    def test_invalid_email_rejected(self, db: DatabaseManager, email):
        with pytest.raises(ValueError):
            db.create_user(email)

    def test_duplicate_email_rejected(self, db: DatabaseManager):
        db.create_user("dave@acme.test")
        with pytest.raises(ValueError):
            db.create_user("DAVE@acme.test")

    def test_list_users_scoped_to_client(self, db: DatabaseManager, seeded):
        assert [u["email"] for u in db.list_users(seeded["globex"])] == ["bob@globex.test", "carol@globex.test"]
        assert len(db.list_users()) == 3

    def test_membership_is_idempotent(self, db: DatabaseManager, seeded):
        db.add_membership(seeded["alice"], seeded["globex"])
        db.add_membership(seeded["alice"], seeded["globex"])
        assert db.get_user(seeded["alice"])["client_ids"] == sorted([seeded["acme"], seeded["globex"]])

    def test_update_user_ignores_unknown_fields(self, db: DatabaseManager, seeded):
        user = db.update_user(seeded["bob"], contact_name="Robert", password="x", is_researcher=True)
        assert user["contact_name"] == "Robert"
        assert [u["id"] for u in db.list_researchers()] == [seeded["bob"]]

    def test_update_email_must_stay_unique(self, db: DatabaseManager, seeded):
        with pytest.raises(ValueError):
            db.update_user(seeded["bob"], email="alice@acme.test")

    def test_remove_from_client_drops_its_authorizations(self, db: DatabaseManager, seeded):
        db.add_membership(seeded["alice"], seeded["globex"])
        db.authorize("clients", seeded["globex"], seeded["alice"], seeded["globex"], True)
        db.delete_user(seeded["alice"], seeded["globex"])
        assert db.get_user(seeded["alice"])["client_ids"] == [seeded["acme"]]
        assert [a["client_id"] for a in db.user_authorizations(seeded["alice"])] == [seeded["acme"]]

    def test_remove_non_member(self, db: DatabaseManager, seeded):
        with pytest.raises(NotFoundError):
            db.delete_user(seeded["bob"], seeded["acme"])

    def test_delete_user(self, db: DatabaseManager, seeded):
        db.delete_user(seeded["bob"])
        with pytest.raises(NotFoundError):
            db.get_user(seeded["bob"])
        assert [r["id"] for r in db.authorized_users("clients", seeded["globex"], seeded["globex"])] == [seeded["carol"]]


# --- Authorizations ---


class TestAuthorizations:
    def test_authorize_upserts(self, db: DatabaseManager, seeded):
        project, acme, alice = seeded["project"], seeded["acme"], seeded["alice"]
        db.authorize("projects", project, alice, acme, True)
        db.authorize("projects", project, alice, acme, False)
        assert db.authorized_users("projects", project, acme) == [{"id": alice, "authorized": False}]
        rows = [a for a in db.user_authorizations(alice) if a["resource_type"] == "projects"]
        assert len(rows) == 1

    def test_authorization_is_per_client_context(self, db: DatabaseManager, seeded):
        """The same resource can be authorized under one client and not another."""
        report, alice = seeded["report"], seeded["alice"]
        db.add_membership(alice, seeded["globex"])
        db.authorize("reports", report, alice, seeded["acme"], True)
        assert db.authorized_users("reports", report, seeded["acme"]) == [{"id": alice, "authorized": True}]
        globex_rows = {r["id"]: r["authorized"] for r in db.authorized_users("reports", report, seeded["globex"])}
        assert globex_rows[alice] is False

    def test_non_member_cannot_be_authorized(self, db: DatabaseManager, seeded):
        with pytest.raises(ValueError):
            db.authorize("clients", seeded["acme"], seeded["bob"], seeded["acme"], True)

    def test_unknown_resource(self, db: DatabaseManager, seeded):
        with pytest.raises(NotFoundError):
            db.authorized_users("projects", 999, seeded["acme"])
        with pytest.raises(ValueError):
            db.authorize("invoices", 1, seeded["alice"], seeded["acme"], True)

    def test_my_authorizations_needs_current_user(self, db: DatabaseManager, db_path, seeded):
        with pytest.raises(ValueError):
            db.my_authorizations()
        me = DatabaseManager(db_path=db_path, current_user_id=seeded["bob"])
        assert [a["resource_id"] for a in me.my_authorizations()] == [seeded["globex"]]


# --- Global scopes and demo data ---


class TestScopes:
    def test_set_user_scopes(self, db: DatabaseManager, seeded):
        assert db.set_user_scopes(seeded["alice"], {"admin": True}) == {"admin": True}
        assert db.set_user_scopes(seeded["alice"], {"admin": False, "billing": True}) == {
            "admin": False,
            "billing": True,
        }

    def test_unknown_scope(self, db: DatabaseManager, seeded):
        with pytest.raises(ValueError):
            db.set_user_scopes(seeded["alice"], {"root": True})

    def test_list_scopes(self, db: DatabaseManager, seeded):
        assert db.list_scopes() == ["admin", "billing"]


class TestSeed:
    def test_seed_only_fills_empty_database(self, db: DatabaseManager):
        db.seed_demo_data()
        db.seed_demo_data()
        assert [c["name"] for c in db.list_clients()] == ["Acme", "Globex"]
        assert len(db.list_users()) == 3
