"""
Database manager for the Mercury admin local backend: clients, users, resources and authorizations.
Supports local SQLite (default) or any SQLAlchemy URL via DATABASE_URL.
Read operations return API-shaped dicts (what the HTTP API returns), so the
local transport can serve them unchanged.
"""
import os
from pathlib import Path
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from models import (
    RESOURCE_TYPES,
    Authorization,
    Base,
    Client,
    ClientMembership,
    Project,
    Report,
    Scope,
    User,
    UserScope,
)

USER_FIELDS = ("email", "contact_name", "contact_title", "company_name", "is_researcher")


class NotFoundError(ValueError):
    """Requested row does not exist."""


def user_to_dict(user: User) -> dict:
    """API shape of a user; client_ids lists the clients the user belongs to."""
    return {
        "id": user.id,
        "email": user.email,
        "contact_name": user.contact_name,
        "contact_title": user.contact_title,
        "company_name": user.company_name,
        "is_researcher": bool(user.is_researcher),
        "client_ids": sorted(m.client_id for m in user.memberships),
    }


def client_to_dict(client: Client) -> dict:
    return {"id": client.id, "name": client.name}


def authorization_to_dict(auth: Authorization) -> dict:
    return {
        "resource_type": auth.resource_type,
        "resource_id": auth.resource_id,
        "client_id": auth.client_id,
        "authorized": bool(auth.authorized),
    }


class DatabaseManager:
    """Database as an object: owns engine and sessions, exposes operations as methods."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        database_url: str | None = None,
        current_user_id: int | None = None,
    ) -> None:
        self._current_user_id = current_user_id
        url = database_url or os.environ.get("DATABASE_URL")
        if url:
            self._engine = create_engine(url, echo=False)
        else:
            if db_path is None:
                db_path = Path(__file__).resolve().parent / "mercury.db"
            path_str = str(db_path)
            self._engine = create_engine(f"sqlite:///{path_str}", echo=False)
        self._session_factory = sessionmaker(
            bind=self._engine, autocommit=False, autoflush=False
        )

    @property
    def current_user_id(self) -> int | None:
        """Current user id for this manager (read-only)."""
        return self._current_user_id

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        """Yield a new session (context manager)."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def _require_user(self) -> None:
        """Raise if current_user_id is not set (required for /users/me)."""
        if self._current_user_id is None:
            raise ValueError("Current user is not set.")

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        Base.metadata.create_all(self._engine)

    # --- Clients and resources ---

    def has_any_client(self) -> bool:
        with self._session() as session:
            return session.query(Client).count() > 0

    def add_client(self, name: str) -> Client:
        """Add a new client. Returns the created Client."""
        name = (name or "").strip()
        if not name:
            raise ValueError("Client name is required.")
        with self._session() as session:
            if session.query(Client).filter(Client.name == name).first():
                raise ValueError("A client with this name already exists.")
            client = Client(name=name)
            session.add(client)
            session.commit()
            session.refresh(client)
            return client

    def list_clients(self) -> list[dict]:
        """All clients ordered by name."""
        with self._session() as session:
            return [client_to_dict(c) for c in session.query(Client).order_by(Client.name).all()]

    def get_client(self, client_id: int) -> dict:
        with self._session() as session:
            client = session.query(Client).filter(Client.id == client_id).first()
            if client is None:
                raise NotFoundError("Client not found.")
            return client_to_dict(client)

    def add_project(self, client_id: int, name: str) -> Project:
        with self._session() as session:
            if session.query(Client).filter(Client.id == client_id).first() is None:
                raise NotFoundError("Client not found.")
            project = Project(client_id=client_id, name=name)
            session.add(project)
            session.commit()
            session.refresh(project)
            return project

    def add_report(self, project_id: int, name: str) -> Report:
        with self._session() as session:
            if session.query(Project).filter(Project.id == project_id).first() is None:
                raise NotFoundError("Project not found.")
            report = Report(project_id=project_id, name=name)
            session.add(report)
            session.commit()
            session.refresh(report)
            return report

    def _resource_exists(self, session: Session, resource_type: str, resource_id: int) -> bool:
        model = {"clients": Client, "projects": Project, "reports": Report}.get(resource_type)
        if model is None:
            raise ValueError(f"Unknown resource type: {resource_type}.")
        return session.query(model).filter(model.id == resource_id).first() is not None

    # --- Users ---

    def list_users(self, client_id: int | None = None) -> list[dict]:
        """All users, or the members of client_id. Ordered by email."""
        with self._session() as session:
            q = session.query(User)
            if client_id is not None:
                q = q.join(ClientMembership).filter(ClientMembership.client_id == client_id)
            return [user_to_dict(u) for u in q.order_by(User.email).all()]

    def list_researchers(self) -> list[dict]:
        with self._session() as session:
            users = session.query(User).filter(User.is_researcher == True).order_by(User.email).all()
            return [user_to_dict(u) for u in users]

    def get_user(self, user_id: int) -> dict:
        with self._session() as session:
            user = session.query(User).filter(User.id == user_id).first()
            if user is None:
                raise NotFoundError("User not found.")
            return user_to_dict(user)

    def create_user(
        self,
        email: str,
        *,
        client_id: int | None = None,
        authorize: bool = True,
        **fields,
    ) -> dict:
        """
        Create a user, optionally as a member of client_id.
        With authorize=True the new member is also authorized on that client.
        """
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValueError("A valid email is required.")
        with self._session() as session:
            if session.query(User).filter(User.email == email).first():
                raise ValueError("A user with this email already exists.")
            if client_id is not None and session.query(Client).filter(Client.id == client_id).first() is None:
                raise NotFoundError("Client not found.")
            user = User(email=email, **{k: v for k, v in fields.items() if k in USER_FIELDS and k != "email"})
            session.add(user)
            session.flush()
            if client_id is not None:
                session.add(ClientMembership(client_id=client_id, user_id=user.id))
                if authorize:
                    session.add(
                        Authorization(
                            user_id=user.id,
                            client_id=client_id,
                            resource_type="clients",
                            resource_id=client_id,
                            authorized=True,
                        )
                    )
            session.commit()
            session.refresh(user)
            return user_to_dict(user)

    def add_membership(self, user_id: int, client_id: int) -> None:
        """Add user to client (no-op if already a member)."""
        with self._session() as session:
            if session.query(User).filter(User.id == user_id).first() is None:
                raise NotFoundError("User not found.")
            if session.query(Client).filter(Client.id == client_id).first() is None:
                raise NotFoundError("Client not found.")
            exists = (
                session.query(ClientMembership)
                .filter(ClientMembership.user_id == user_id, ClientMembership.client_id == client_id)
                .first()
            )
            if exists is None:
                session.add(ClientMembership(client_id=client_id, user_id=user_id))
                session.commit()

    def update_user(self, user_id: int, **fields) -> dict:
        """Update user columns (unknown keys are ignored)."""
        with self._session() as session:
            user = session.query(User).filter(User.id == user_id).first()
            if user is None:
                raise NotFoundError("User not found.")
            for key, value in fields.items():
                if key not in USER_FIELDS:
                    continue
                if key == "email":
                    value = (value or "").strip().lower()
                    if not value or "@" not in value:
                        raise ValueError("A valid email is required.")
                    other = session.query(User).filter(User.email == value, User.id != user_id).first()
                    if other:
                        raise ValueError("A user with this email already exists.")
                setattr(user, key, value)
            session.commit()
            session.refresh(user)
            return user_to_dict(user)

    def delete_user(self, user_id: int, client_id: int | None = None) -> None:
        """Delete a user, or with client_id only remove them (and their authorizations) from that client."""
        with self._session() as session:
            user = session.query(User).filter(User.id == user_id).first()
            if user is None:
                raise NotFoundError("User not found.")
            if client_id is None:
                session.delete(user)
                session.commit()
                return
            membership = (
                session.query(ClientMembership)
                .filter(ClientMembership.user_id == user_id, ClientMembership.client_id == client_id)
                .first()
            )
            if membership is None:
                raise NotFoundError("User is not a member of this client.")
            session.delete(membership)
            session.query(Authorization).filter(
                Authorization.user_id == user_id, Authorization.client_id == client_id
            ).delete()
            session.commit()

    # --- Authorizations ---

    def authorized_users(self, resource_type: str, resource_id: int, client_id: int) -> list[dict]:
        """Members of client_id with their authorization flag on the resource: [{id, authorized}]."""
        with self._session() as session:
            if not self._resource_exists(session, resource_type, resource_id):
                raise NotFoundError("Resource not found.")
            members = (
                session.query(User)
                .join(ClientMembership)
                .filter(ClientMembership.client_id == client_id)
                .order_by(User.email)
                .all()
            )
            flags = {
                a.user_id: bool(a.authorized)
                for a in session.query(Authorization).filter(
                    Authorization.client_id == client_id,
                    Authorization.resource_type == resource_type,
                    Authorization.resource_id == resource_id,
                )
            }
            return [{"id": u.id, "authorized": flags.get(u.id, False)} for u in members]

    def authorize(
        self,
        resource_type: str,
        resource_id: int,
        user_id: int,
        client_id: int,
        authorize: bool,
    ) -> dict:
        """Set the authorization flag of user_id on the resource under client_id (upsert)."""
        with self._session() as session:
            if resource_type not in RESOURCE_TYPES:
                raise ValueError(f"Unknown resource type: {resource_type}.")
            if not self._resource_exists(session, resource_type, resource_id):
                raise NotFoundError("Resource not found.")
            membership = (
                session.query(ClientMembership)
                .filter(ClientMembership.user_id == user_id, ClientMembership.client_id == client_id)
                .first()
            )
            if membership is None:
                raise ValueError("User is not a member of this client.")
            auth = (
                session.query(Authorization)
                .filter(
                    Authorization.user_id == user_id,
                    Authorization.client_id == client_id,
                    Authorization.resource_type == resource_type,
                    Authorization.resource_id == resource_id,
                )
                .first()
            )
            if auth is None:
                auth = Authorization(
                    user_id=user_id,
                    client_id=client_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
                session.add(auth)
            auth.authorized = bool(authorize)
            session.commit()
            session.refresh(auth)
            return authorization_to_dict(auth)

    def user_authorizations(self, user_id: int) -> list[dict]:
        """All authorization rows of a user (granted and revoked), ordered by resource."""
        with self._session() as session:
            if session.query(User).filter(User.id == user_id).first() is None:
                raise NotFoundError("User not found.")
            rows = (
                session.query(Authorization)
                .filter(Authorization.user_id == user_id)
                .order_by(Authorization.resource_type, Authorization.resource_id, Authorization.client_id)
                .all()
            )
            return [authorization_to_dict(a) for a in rows]

    def my_authorizations(self) -> list[dict]:
        """Authorizations of the current user."""
        self._require_user()
        return self.user_authorizations(self._current_user_id)

    # --- Global scopes ---

    def add_scope(self, name: str) -> Scope:
        with self._session() as session:
            scope = Scope(name=name)
            session.add(scope)
            session.commit()
            session.refresh(scope)
            return scope

    def list_scopes(self) -> list[str]:
        with self._session() as session:
            return [s.name for s in session.query(Scope).order_by(Scope.name).all()]

    def set_user_scopes(self, user_id: int, states: dict) -> dict:
        """Grant/revoke global scopes by name: {scope_name: bool}. Returns the user's scope map."""
        with self._session() as session:
            if session.query(User).filter(User.id == user_id).first() is None:
                raise NotFoundError("User not found.")
            scopes = {s.name: s for s in session.query(Scope).all()}
            for name, granted in states.items():
                scope = scopes.get(name)
                if scope is None:
                    raise ValueError(f"Unknown scope: {name}.")
                row = (
                    session.query(UserScope)
                    .filter(UserScope.user_id == user_id, UserScope.scope_id == scope.id)
                    .first()
                )
                if row is None:
                    row = UserScope(user_id=user_id, scope_id=scope.id)
                    session.add(row)
                row.granted = bool(granted)
            session.commit()
            rows = session.query(UserScope).filter(UserScope.user_id == user_id).all()
            return {r.scope.name: bool(r.granted) for r in rows}

    # --- Demo data ---

    def seed_demo_data(self) -> None:
        """Populate an empty database with a couple of clients and users (development only)."""
        if self.has_any_client():
            return
        acme = self.add_client("Acme")
        globex = self.add_client("Globex")
        project = self.add_project(acme.id, "Brand tracker")
        self.add_report(project.id, "Q1 wave")
        self.add_scope("admin")
        self.add_scope("billing")
        alice = self.create_user("alice@acme.test", client_id=acme.id, contact_name="Alice Moreau")
        self.create_user("bob@globex.test", client_id=globex.id, contact_name="Bob Stein")
        self.create_user("carol@globex.test", client_id=globex.id, authorize=False, contact_name="Carol Diaz")
        self.add_membership(alice["id"], globex.id)
