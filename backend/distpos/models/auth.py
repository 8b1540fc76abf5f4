from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class User(db.Model):
    """
    Terminal operator.

    Capabilities come from the role defaults in permissions.py, adjusted by
    per-user GRANT/DENY rows in UserCapability.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True)
    display_name = db.Column(db.String(128), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="cashier")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class UserCapability(db.Model):
    __tablename__ = "user_capabilities"
    __table_args__ = (
        db.UniqueConstraint("user_id", "capability", name="uq_user_capabilities_user_cap"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    capability = db.Column(db.String(64), nullable=False)
    override_type = db.Column(db.String(8), nullable=False)  # GRANT or DENY

    user = db.relationship("User", backref=db.backref("capability_overrides", lazy=True))
