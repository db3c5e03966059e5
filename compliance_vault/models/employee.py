from sqlalchemy import Column, Integer, Text
from sqlalchemy.orm import relationship
from compliance_vault.database import Base


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Text, primary_key=True)
    employee_id = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    email = Column(Text)
    department_id = Column(Text)
    status = Column(Text, nullable=False, default="active")
    container_created_at = Column(Text)
    container_status = Column(Text, nullable=False, default="none")
    container_file_count = Column(Integer, nullable=False, default=0)
    container_last_updated = Column(Text)
    created_at = Column(Text, nullable=False)

    files = relationship("FileRecord", back_populates="employee", cascade="all, delete-orphan")
