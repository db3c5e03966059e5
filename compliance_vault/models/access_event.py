from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.orm import relationship
from compliance_vault.database import Base


class FileAccessEvent(Base):
    __tablename__ = "file_access_events"

    id = Column(Text, primary_key=True)
    file_record_id = Column(Text, ForeignKey("file_records.id", ondelete="CASCADE"), nullable=False)
    action = Column(Text, nullable=False)
    requester_id = Column(Text)
    ip_address = Column(Text)
    details = Column(Text, nullable=False, default="{}")
    occurred_at = Column(Text, nullable=False)

    file_record = relationship("FileRecord", back_populates="access_events")
