"""Row builders shared by the ledger tests."""

from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.jwt import create_access_token
from src.core.auth.models import User, UserRole
from src.core.auth.service import AuthService
from src.modules.payment_requests.models import BankAccount
from src.modules.students.models import ClassAcademic, Student, StudentClass, StudentStatus
from src.modules.tuitions.models import Tuition, TuitionStatus


async def create_operator(
    db_session: AsyncSession,
    email: str = "cashier@school.com",
    role: UserRole = UserRole.SUPER_ADMIN,
) -> User:
    user = await AuthService(db_session).create_user(
        email=email,
        password="Test123!",
        full_name="Test Operator",
        role=role,
    )
    await db_session.commit()
    return user


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(user.id, user.role)
    return {"Authorization": f"Bearer {token}"}


async def create_class(
    db_session: AsyncSession,
    class_name: str = "X-IPA-1",
    academic_year: str = "2024/2025",
    default_fee: Decimal | None = Decimal("500000.00"),
) -> ClassAcademic:
    class_academic = ClassAcademic(
        class_name=class_name,
        academic_year=academic_year,
        grade=10,
        default_fee=default_fee,
        is_active=True,
    )
    db_session.add(class_academic)
    await db_session.flush()
    return class_academic


async def create_student(
    db_session: AsyncSession,
    class_academic: ClassAcademic | None = None,
    student_number: str = "NIS-0001",
    start_join_date: date = date(2024, 7, 1),
) -> Student:
    """Student, enrolled in class_academic when one is given."""
    student = Student(
        student_number=student_number,
        name=f"Student {student_number}",
        start_join_date=start_join_date,
        status=StudentStatus.ACTIVE.value,
    )
    db_session.add(student)
    await db_session.flush()
    if class_academic is not None:
        db_session.add(StudentClass(student_id=student.id, class_academic_id=class_academic.id))
        await db_session.flush()
    return student


async def create_tuition(
    db_session: AsyncSession,
    student: Student,
    class_academic: ClassAcademic,
    period: str = "JULY",
    year: int = 2024,
    fee_amount: Decimal = Decimal("500000.00"),
    scholarship_amount: Decimal = Decimal("0.00"),
    discount_amount: Decimal = Decimal("0.00"),
    paid_amount: Decimal = Decimal("0.00"),
    status: TuitionStatus = TuitionStatus.UNPAID,
) -> Tuition:
    tuition = Tuition(
        student_id=student.id,
        class_academic_id=class_academic.id,
        period=period,
        year=year,
        fee_amount=fee_amount,
        scholarship_amount=scholarship_amount,
        discount_amount=discount_amount,
        paid_amount=paid_amount,
        status=status.value,
        due_date=date(year, 7, 10),
    )
    db_session.add(tuition)
    await db_session.flush()
    return tuition


async def create_bank_account(
    db_session: AsyncSession, account_number: str = "1234567890", is_active: bool = True
) -> BankAccount:
    account = BankAccount(
        bank_name="Bank Central",
        bank_code="014",
        account_number=account_number,
        account_name="Yayasan Sekolah",
        is_active=is_active,
    )
    db_session.add(account)
    await db_session.flush()
    return account
