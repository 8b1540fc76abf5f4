from __future__ import annotations

from ..extensions import db
from ..money import as_float
from ..time_utils import to_utc_z


class Client(db.Model):
    """
    Wholesale client with a credit account.

    balance grows with credit sales and shrinks as pending sales are collected.
    """
    __tablename__ = "clients"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    tax_id = db.Column(db.String(32), nullable=True)
    zone = db.Column(db.String(64), nullable=True)

    credit_limit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    default_price_tier = db.Column(db.Integer, nullable=False, default=1)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "tax_id": self.tax_id,
            "zone": self.zone,
            "credit_limit": as_float(self.credit_limit),
            "balance": as_float(self.balance),
            "default_price_tier": self.default_price_tier,
            "is_active": self.is_active,
        }


VOUCHER_ENABLED = "enabled"
VOUCHER_USED = "used"
VOUCHER_EXPIRED = "expired"


class Voucher(db.Model):
    """
    Return credit issued to a client.

    remaining only ever decreases; status flips to "used" when it hits zero.
    """
    __tablename__ = "vouchers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    folio = db.Column(db.String(32), nullable=False, unique=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)

    face_value = db.Column(db.Numeric(14, 2), nullable=False)
    remaining = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=VOUCHER_ENABLED, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    client = db.relationship("Client", backref=db.backref("vouchers", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "folio": self.folio,
            "client_id": self.client_id,
            "face_value": as_float(self.face_value),
            "remaining": as_float(self.remaining),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }
