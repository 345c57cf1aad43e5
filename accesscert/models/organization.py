"""
Organization models: organizations, departments, users.

These are read-mostly from the engine's point of view: the people and
org-chart records that scope resolution and reviewer assignment need.
Department and user administration happens outside the engine.
"""

from datetime import datetime, timezone

from accesscert.models import db
from accesscert.models.base import OrgScopedModel

USER_STATUSES = frozenset({"active", "inactive", "terminated", "suspended"})


# ═══════════════════════════════════════════════════════════════
# 1. ORGANIZATIONS
# ═══════════════════════════════════════════════════════════════
class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(OrgScopedModel):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("organization_id", "code", name="uq_department_org_code"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "code": self.code,
            "name": self.name,
        }


# ═══════════════════════════════════════════════════════════════
# 3. USERS
# ═══════════════════════════════════════════════════════════════
class User(OrgScopedModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    employee_id = db.Column(db.String(50))
    status = db.Column(db.String(20), default="active")  # active, inactive, terminated, suspended
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Composite unique: same email can exist in different organizations
    __table_args__ = (
        db.UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
        db.Index("ix_users_manager_id", "manager_id"),
    )

    department = db.relationship("Department", lazy="joined")
    manager = db.relationship("User", remote_side=[id], lazy="select")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "full_name": self.full_name,
            "employee_id": self.employee_id,
            "status": self.status,
            "department_id": self.department_id,
            "department_code": self.department.code if self.department else None,
            "manager_id": self.manager_id,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
