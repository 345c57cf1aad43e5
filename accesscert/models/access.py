"""
Access domain model: applications, roles and access grants.

Models:
    - Application: a system users hold access to, with an optional owner.
    - Role: an entitlement inside an application, identified by ``code``.
    - AccessGrant: one (user, application, role) assignment.

AccessGrant is the source of truth for scope resolution. The engine only
writes to it when a ``revoked`` review decision deactivates a grant.
"""

from datetime import datetime, timezone

from accesscert.models import db
from accesscert.models.base import OrgScopedModel

# ── Constants ────────────────────────────────────────────────────────────────

BUSINESS_CRITICALITIES = frozenset({"critical", "high", "medium", "low"})
RISK_LEVELS = frozenset({"critical", "high", "medium", "low"})


class Application(OrgScopedModel):
    """Business application whose access grants get certified."""

    __tablename__ = "applications"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    owner_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Application owner; reviewer for application_owner campaigns",
    )
    business_criticality = db.Column(db.String(20), default="medium")
    is_active = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.UniqueConstraint("organization_id", "code", name="uq_application_org_code"),
    )

    roles = db.relationship("Role", back_populates="application", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "code": self.code,
            "name": self.name,
            "owner_id": self.owner_id,
            "business_criticality": self.business_criticality,
            "is_active": self.is_active,
        }


class Role(db.Model):
    """Entitlement inside an application. ``code`` is what SOD rules reference."""

    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    code = db.Column(db.String(100), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    risk_level = db.Column(db.String(20), default="low")

    __table_args__ = (
        db.UniqueConstraint("application_id", "code", name="uq_role_app_code"),
    )

    application = db.relationship("Application", back_populates="roles")

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "code": self.code,
            "name": self.name,
            "risk_level": self.risk_level,
        }


class AccessGrant(OrgScopedModel):
    """
    A user's access to an application, optionally through a specific role.

    ``is_active`` flips to False exactly once when a revoke decision is
    remediated; ``revoked_at`` / ``revoked_by_id`` record who did it.
    """

    __tablename__ = "access_grants"
    __table_args__ = (
        db.Index("ix_access_grants_user_active", "user_id", "is_active"),
        db.Index("ix_access_grants_app", "application_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    granted_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    user = db.relationship("User", foreign_keys=[user_id])
    application = db.relationship("Application")
    role = db.relationship("Role")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "application_id": self.application_id,
            "role_id": self.role_id,
            "is_active": self.is_active,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "revoked_by_id": self.revoked_by_id,
        }

    def __repr__(self):
        return f"<AccessGrant {self.id}: user={self.user_id} app={self.application_id} role={self.role_id}>"
