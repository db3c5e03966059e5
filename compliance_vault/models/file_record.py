import json

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from compliance_vault.database import Base


class FileRecord(Base):
    __tablename__ = "file_records"

    id = Column(Text, primary_key=True)
    employee_id = Column(Text, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    category = Column(Text, nullable=False)
    version_number = Column(Integer, nullable=False)
    original_filename = Column(Text, nullable=False)
    stored_filename = Column(Text, nullable=False, unique=True)
    storage_path = Column(Text, nullable=False)
    mime_type = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False)
    content_hash = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    uploaded_by = Column(Text)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    issue_date = Column(Text)
    expiry_date = Column(Text)
    uploaded_at = Column(Text)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    employee = relationship("Employee", back_populates="files")
    access_events = relationship("FileAccessEvent", back_populates="file_record", cascade="all, delete-orphan")

    @property
    def meta(self) -> dict:
        return json.loads(self.metadata_json or "{}")

    @meta.setter
    def meta(self, value: dict) -> None:
        self.metadata_json = json.dumps(value, sort_keys=True, default=str)
