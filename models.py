from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime

Base = declarative_base()

# Resource paths an authorization can be scoped to, most specific first.
RESOURCE_TYPES = ("reports", "projects", "clients")


class Client(Base):
    __tablename__ = "clients"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)

    projects = relationship("Project", back_populates="client", cascade="all, delete-orphan")
    memberships = relationship("ClientMembership", back_populates="client", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    contact_name = Column(String, nullable=True)
    contact_title = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    is_researcher = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    memberships = relationship("ClientMembership", back_populates="user", cascade="all, delete-orphan")
    authorizations = relationship("Authorization", back_populates="user", cascade="all, delete-orphan")
    scopes = relationship("UserScope", back_populates="user", cascade="all, delete-orphan")


class ClientMembership(Base):
    """A user belongs to a client (a user may belong to several clients)."""

    __tablename__ = "client_memberships"
    __table_args__ = (UniqueConstraint("client_id", "user_id", name="uq_client_membership"),)
    client_id = Column(Integer, ForeignKey("clients.id"), primary_key=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True, nullable=False)

    client = relationship("Client", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class Project(Base):
    __tablename__ = "projects"
    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    name = Column(String, nullable=False)

    client = relationship("Client", back_populates="projects")
    reports = relationship("Report", back_populates="project", cascade="all, delete-orphan")


class Report(Base):
    __tablename__ = "reports"
    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    name = Column(String, nullable=False)

    project = relationship("Project", back_populates="reports")


class Authorization(Base):
    """Authorization of a user on a resource (client/project/report), granted under a client context."""

    __tablename__ = "authorizations"
    __table_args__ = (
        UniqueConstraint("user_id", "client_id", "resource_type", "resource_id", name="uq_authorization"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # Context: the client under which the user is authorized
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(Integer, nullable=False)
    authorized = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    user = relationship("User", back_populates="authorizations")


class Scope(Base):
    """Global permission scope (not tied to a resource)."""

    __tablename__ = "scopes"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)


class UserScope(Base):
    __tablename__ = "user_scopes"
    __table_args__ = (UniqueConstraint("user_id", "scope_id", name="uq_user_scope"),)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True, nullable=False)
    scope_id = Column(Integer, ForeignKey("scopes.id"), primary_key=True, nullable=False)
    granted = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="scopes")
    scope = relationship("Scope")
