# students.py
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from config import COLUMNS, FIRST_DATA_ROW, STUDENT_SHEET_NAME
from workbook_cache import CellValue, Formula, Sheet, WorkbookCache

logger = logging.getLogger("students")

MONTHS: List[str] = [m.lower() for m in COLUMNS["MESES"]]
TEN_INSTALLMENT_PLAN = 10
LATE_FEE_RATE = 0.05
DUE_DAY = 11

_STUDENT_ID_RE = re.compile(r"^\d{13}$")
_CURRENCY_PREFIX_RE = re.compile(r"^\s*L(?:ps)?\.?\s*", re.IGNORECASE)
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]+")


# ===================== Cell helpers =====================

def norm_id(value: object) -> str:
    try:
        if isinstance(value, Formula):
            value = value.result if value.result is not None else value.text
        if value is None:
            return ""
        if isinstance(value, bool):
            return str(value)
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return str(int(value)) if value.is_integer() else str(value)
        s = str(value).strip()
        if s.endswith(".0"):
            s = s[:-2]
        return s
    except Exception:
        return str(value)


def _cell_text(value: CellValue) -> str:
    if isinstance(value, Formula):
        value = value.text if value.text is not None else value.result
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _parse_money_text(text: str) -> Optional[float]:
    cleaned = _NON_NUMERIC_RE.sub("", _CURRENCY_PREFIX_RE.sub("", text))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_amount(value: CellValue) -> Optional[float]:
    """
    Turn a money cell into a float, or None when unset/unparseable.

    Accepts raw numbers, currency strings ("L. 1,500.00") and formula cells
    (cached numeric result first, then the cached text).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return _parse_money_text(value)
    if isinstance(value, Formula):
        if value.result is not None:
            return float(value.result)
        if value.text:
            return _parse_money_text(value.text)
    return None


def _plan_code(value: CellValue) -> Optional[int]:
    amount = normalize_amount(value)
    if amount is None or not amount.is_integer():
        return None
    return int(amount)


def is_valid_student_id(text: str) -> bool:
    return bool(_STUDENT_ID_RE.match(text or ""))


# ===================== Records =====================

@dataclass(frozen=True)
class StudentRecord:
    id: str
    name: str
    grade: str
    plan: Optional[int]
    months: Dict[str, Optional[float]]
    monthly_fee: float
    raw_fee: CellValue = field(default=None, compare=False, repr=False)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "nombre": self.name,
            "grado": self.grade,
            "planDePago": self.plan,
            "meses": dict(self.months),
            "totalPagar": self.monthly_fee,
        }


@dataclass(frozen=True)
class DebtSnapshot:
    pending_months: Tuple[str, ...]
    monthly_fee: float
    late_fee: float
    tuition_debt: float
    total_debt: float
    up_to_date: bool

    def as_dict(self) -> Dict[str, object]:
        return {
            "deudaMensualidad": f"{self.tuition_debt:.2f}",
            "deudaMora": f"{self.late_fee:.2f}",
            "totalDeuda": f"{self.total_debt:.2f}",
            "mesesPendientes": list(self.pending_months),
            "cuotaMensual": f"{self.monthly_fee:.2f}",
            "alDia": self.up_to_date,
        }


# ===================== Debt engine =====================

def billing_window(plan: Optional[int], current_month: int) -> List[Tuple[int, str]]:
    """(month number, month name) from the plan's first billed month through current_month."""
    start = 2 if plan == TEN_INSTALLMENT_PLAN else 1
    return [(num, name) for num, name in enumerate(MONTHS, start=1) if start <= num <= current_month]


def _due_date(month_num: int, as_of: datetime) -> datetime:
    year = as_of.year
    if month_num == 12 and as_of.month == 1:
        year -= 1
    if month_num == 12:
        return datetime(year + 1, 1, DUE_DAY, tzinfo=as_of.tzinfo)
    return datetime(year, month_num + 1, DUE_DAY, tzinfo=as_of.tzinfo)


def compute_debt(record: StudentRecord, as_of: Optional[datetime] = None) -> DebtSnapshot:
    as_of = as_of or datetime.now()
    pending = [
        (num, name) for num, name in billing_window(record.plan, as_of.month)
        if record.months.get(name) is None
    ]
    fee = record.monthly_fee
    late_fee = 0.0
    for num, _ in pending:
        if as_of > _due_date(num, as_of):
            late_fee += fee * LATE_FEE_RATE

    tuition_debt = fee * len(pending)
    return DebtSnapshot(
        pending_months=tuple(name.upper() for _, name in pending),
        monthly_fee=fee,
        late_fee=late_fee,
        tuition_debt=tuition_debt,
        total_debt=tuition_debt + late_fee,
        up_to_date=not pending,
    )


# ===================== Lookup =====================

class StudentDirectory:
    """Student lookups over the cached workbook."""

    def __init__(self, cache: WorkbookCache, sheet_name: str = STUDENT_SHEET_NAME,
                 first_row: int = FIRST_DATA_ROW):
        self.cache = cache
        self.sheet_name = sheet_name
        self.first_row = first_row

    async def _sheet(self) -> Optional[Sheet]:
        workbook = await self.cache.get_workbook()
        return workbook.sheet_or_first(self.sheet_name)

    def _record_from_row(self, student_id: str, row) -> StudentRecord:
        raw_fee = Sheet.value(row, COLUMNS["TOTAL_PAGAR"])
        months = {
            name.lower(): normalize_amount(Sheet.value(row, col))
            for name, col in COLUMNS["MESES"].items()
        }
        return StudentRecord(
            id=student_id,
            name=_cell_text(Sheet.value(row, COLUMNS["NOMBRE"])),
            grade=_cell_text(Sheet.value(row, COLUMNS["GRADO"])),
            plan=_plan_code(Sheet.value(row, COLUMNS["PLAN"])),
            months=months,
            monthly_fee=normalize_amount(raw_fee) or 0.0,
            raw_fee=raw_fee,
        )

    async def find_student(self, student_id: str) -> Optional[StudentRecord]:
        sheet = await self._sheet()
        if sheet is None:
            return None
        wanted = norm_id(student_id)
        for _, row in sheet.iter_rows(self.first_row):
            if norm_id(Sheet.value(row, COLUMNS["ID"])) == wanted:
                return self._record_from_row(wanted, row)
        logger.debug("[find_student] No row for id=%s", student_id)
        return None

    async def list_records(self) -> List[StudentRecord]:
        """Every data row with an id, as a StudentRecord, in sheet order."""
        sheet = await self._sheet()
        if sheet is None:
            return []
        records = []
        for _, row in sheet.iter_rows(self.first_row):
            student_id = norm_id(Sheet.value(row, COLUMNS["ID"]))
            if not student_id:
                continue
            records.append(self._record_from_row(student_id, row))
        return records

    async def list_students(self) -> List[Dict[str, str]]:
        return [
            {"id": r.id, "nombre": r.name, "grado": r.grade}
            for r in await self.list_records()
        ]
