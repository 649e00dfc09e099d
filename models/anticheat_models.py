from sqlalchemy import UniqueConstraint
from extensions import db
from utils.clock import utcnow


class IpTrackingRecord(db.Model):
    __tablename__ = 'ip_tracking'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    user_agent = db.Column(db.String(255), nullable=True)
    first_seen = db.Column(db.DateTime, default=utcnow)
    last_seen = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    seen_count = db.Column(db.Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'ip_address', name='uix_user_ip'),
    )
