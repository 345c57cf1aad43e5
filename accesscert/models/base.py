"""
OrgScopedModel: abstract base class for organization-scoped models.

All models that need organization isolation inherit from OrgScopedModel
instead of db.Model directly. This adds:
  - organization_id FK column with index
  - query_for_org(organization_id) classmethod
"""

from accesscert.models import db


class OrgScopedModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)

