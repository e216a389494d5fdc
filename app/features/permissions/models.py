"""
Permission, Role, and RoleGroup models for the access console.

This module implements the persisted half of the authorization engine:
- Permissions: (resource-set, action-set) grants identified by a unique name
- Roles: named bundles of permissions, each owned by exactly one role group
- Role groups: categories of roles that may require every user to hold one member role
- User role assignments and direct user permissions (association tables)

Effective permissions are never stored; see resolver.py.
"""
from sqlalchemy import Boolean, Column, ForeignKey, JSON, String, Table, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, IdMixin, TimestampMixin, ID_LENGTH


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(ID_LENGTH), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(ID_LENGTH), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

# User-Role relationship
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(ID_LENGTH), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(ID_LENGTH), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

# User direct permissions (granted independently of any role)
user_permissions = Table(
    "user_permissions",
    Base.metadata,
    Column("user_id", String(ID_LENGTH), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(ID_LENGTH), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, IdMixin, TimestampMixin):
    """
    Permission model granting a set of actions on a set of resources.

    Examples:
    - name="account-write", resources=["account"], actions=["write"]
    - name="reports-export", resources=["reports", "exports"], actions=["read", "export"]
    """
    __tablename__ = "permissions"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Stored as JSON arrays; never empty
    resources: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    actions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    category: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    def grants(self, resource: str, action: str) -> bool:
        return resource in self.resources and action in self.actions

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, resources={self.resources}, actions={self.actions})>"


class RoleGroup(Base, IdMixin, TimestampMixin):
    """
    Role group model.

    When ``requires_one`` is set, every user must hold exactly one role from the
    group and ``default_role_id`` names the role injected when they hold none.
    System groups (and the roles in them) are protected from edits and deletion.
    """
    __tablename__ = "role_groups"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    requires_one: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_role_id: Mapped[str | None] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("roles.id", ondelete="RESTRICT", use_alter=True, name="fk_role_groups_default_role"),
        nullable=True,
    )
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<RoleGroup(id={self.id}, name={self.name!r}, requires_one={self.requires_one})>"


class Role(Base, IdMixin, TimestampMixin):
    """
    Role model bundling permissions.

    Every role belongs to exactly one role group. A role is a system role when
    its group is a system group.
    """
    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    group_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("role_groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Relationships
    group: Mapped["RoleGroup"] = relationship(
        "RoleGroup",
        foreign_keys=[group_id],
        lazy="selectin",
    )

    @property
    def is_system(self) -> bool:
        return bool(self.group is not None and self.group.is_system)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, group_id={self.group_id})>"

