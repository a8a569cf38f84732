from typing import List, Optional

from sqlmodel import Session, func, select

from .auth import Principal
from .models import Class, Enrollment, Role


class EnrollmentDirectory:
    """Read-only view over classes and class membership."""

    def __init__(self, db: Session):
        self.db = db

    def get_class(self, class_id: int) -> Optional[Class]:
        return self.db.get(Class, class_id)

    def is_enrolled(self, student_id: int, class_id: int) -> bool:
        q = select(Enrollment.id).where(Enrollment.student_id == student_id, Enrollment.class_id == class_id)
        return self.db.exec(q).first() is not None

    def count_enrolled(self, class_id: int) -> int:
        q = select(func.count()).select_from(Enrollment).where(Enrollment.class_id == class_id)
        return int(self.db.exec(q).one())

    def enrolled_student_ids(self, class_id: int) -> List[int]:
        return list(self.db.exec(select(Enrollment.student_id).where(Enrollment.class_id == class_id)).all())

    def classes_on(self, day_name: str, principal: Principal) -> List[Class]:
        q = select(Class).where(Class.is_active == True, Class.day_of_week == day_name)  # noqa: E712
        if principal.role == Role.faculty:
            q = q.where(Class.faculty_id == principal.id)
        elif principal.role == Role.student:
            q = q.where(Class.id.in_(select(Enrollment.class_id).where(Enrollment.student_id == principal.id)))
        return list(self.db.exec(q.order_by(Class.start_time)).all())

    def can_manage(self, principal: Principal, klass: Class) -> bool:
        return principal.is_admin or (principal.role == Role.faculty and klass.faculty_id == principal.id)
