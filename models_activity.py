import json
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from extensions import db


class ActivityLog(db.Model):
    """Append-only activity stream fed by committed ledger operations.

    Written after the ledger commit and never part of it: a missing row here
    does not mean a missing credit.
    """

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_activity_account_created", "account_id", "created_at"),
    )

    def to_dict(self):
        md = None
        if self.metadata_json:
            try:
                md = json.loads(self.metadata_json)
            except ValueError:
                md = None
        return {
            "id": self.id,
            "account_id": self.account_id,
            "type": self.type,
            "message": self.message,
            "metadata": md,
            "created_at": self.created_at.isoformat(),
        }
