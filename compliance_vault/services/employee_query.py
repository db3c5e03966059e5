from collections.abc import Iterator
from dataclasses import dataclass

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from compliance_vault.models.employee import Employee


@dataclass
class EmployeeFilter:
    employee_ids: list[str] | None = None  # primary or business keys
    department_id: str | None = None
    status: str | None = None
    without_container: bool = False

    def apply(self, query: Query) -> Query:
        if self.employee_ids:
            query = query.filter(
                or_(Employee.id.in_(self.employee_ids), Employee.employee_id.in_(self.employee_ids))
            )
        if self.department_id:
            query = query.filter(Employee.department_id == self.department_id)
        if self.status:
            query = query.filter(Employee.status == self.status)
        if self.without_container:
            query = query.filter(Employee.container_created_at.is_(None))
        return query


def count_employees(db: Session, filters: EmployeeFilter) -> int:
    return filters.apply(db.query(Employee)).count()


def iter_employee_batches(db: Session, filters: EmployeeFilter, batch_size: int) -> Iterator[list[Employee]]:
    """Yield employees in primary-key order, ``batch_size`` at a time.

    Keyset pagination: units mutated by an earlier batch (and so possibly
    no longer matching the filter) never shift later pages.
    """
    last_id = None
    while True:
        query = filters.apply(db.query(Employee))
        if last_id is not None:
            query = query.filter(Employee.id > last_id)
        batch = query.order_by(Employee.id).limit(batch_size).all()
        if not batch:
            return
        last_id = batch[-1].id
        yield batch
