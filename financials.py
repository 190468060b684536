# financials.py
"""
Aggregations behind the admin statistics and dashboard endpoints.

Everything here is a pure function over audit entries or a parsed Workbook,
so the HTTP layer only fetches inputs and serializes the result.
"""
import re
import logging
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional

from config import BOOKS_SHEET_NAME, STUDENT_SHEET_NAME, TRANSPORT_SHEET_NAME
from audit_log import KIND_MESSAGE, KIND_REGISTRATION, KIND_REMOVAL
from students import MONTHS, DebtSnapshot, normalize_amount
from workbook_cache import Formula, Workbook

logger = logging.getLogger("financials")

PERIODS = ("day", "week", "month")
UPPER_MONTHS = [m.upper() for m in MONTHS]

# Transport sheet headers are abbreviated from September on
TRANSPORT_MONTH_COLUMNS = {
    "MARZO": "MARZO", "ABRIL": "ABRIL", "MAYO": "MAYO", "JUNIO": "JUNIO",
    "JULIO": "JULIO", "AGOSTO": "AGOSTO", "SEPT": "SEPTIEMBRE",
    "OCT": "OCTUBRE", "NOV": "NOVIEMBRE", "DIC": "DICIEMBRE",
}

DASHBOARD_SHEETS = [
    STUDENT_SHEET_NAME,
    BOOKS_SHEET_NAME,
    TRANSPORT_SHEET_NAME,
    "PRECIO VENTA LIBROS",
    "ENTREGA 1 PAQUTES LIBROS",
    "TRATO BANDA",
    "VIAJE AL CAJON",
    "VIAJE A LA TIGRA",
    "VIAJE A PUERTO CORTES",
]

_HEADER_STRIP_RE = re.compile(r"[^A-Z0-9]")
UNKNOWN = "Desconocido"


# ===================== Sheet rows =====================

def normalize_header(value: Any) -> str:
    """'Total a Pagar' -> 'TOTALAPAGAR'."""
    return _HEADER_STRIP_RE.sub("", str(value).strip().upper())


def _json_cell(value: Any) -> Any:
    if isinstance(value, Formula):
        return value.result if value.result is not None else value.text
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def read_sheet_records(workbook: Workbook, sheet_name: str) -> List[Dict[str, Any]]:
    """
    Rows 2.. of a sheet as dicts keyed by the normalized row-1 headers.
    Entirely empty rows are skipped; a missing sheet yields [].
    """
    sheet = workbook.sheet(sheet_name)
    if sheet is None:
        logger.warning("Sheet %s does not exist in the workbook.", sheet_name)
        return []

    rows = sheet.iter_rows(1)
    header = next(rows, None)
    if header is None:
        return []
    columns = {
        idx: normalize_header(cell)
        for idx, cell in enumerate(header[1])
        if cell is not None and normalize_header(cell)
    }

    records: List[Dict[str, Any]] = []
    for _, row in rows:
        if all(cell is None or cell == "" for cell in row):
            continue
        records.append({
            key: _json_cell(row[idx]) if idx < len(row) else None
            for idx, key in columns.items()
        })
    return records


def _num(value: Any) -> float:
    return normalize_amount(value) or 0.0


# ===================== Audit log statistics =====================

def parse_period(value: Optional[str]) -> str:
    return value if value in PERIODS else "day"


def period_key(timestamp: str, period: str) -> Optional[str]:
    """Bucket an ISO timestamp: 2025-03-14 / 2025-W11 / 2025-03."""
    try:
        moment = datetime.fromisoformat(timestamp)
    except (TypeError, ValueError):
        return None
    if period == "week":
        iso = moment.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    if period == "month":
        return f"{moment.year}-{moment.month:02d}"
    return moment.date().isoformat()


def count_by_period(entries: Iterable[Dict[str, Any]], kind: str, period: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for entry in entries:
        if entry.get("kind") != kind:
            continue
        key = period_key(entry.get("timestamp"), period)
        if key is not None:
            counts[key] = counts.get(key, 0) + 1
    return counts


def active_users_by_period(entries: Iterable[Dict[str, Any]], period: str) -> Dict[str, int]:
    """Distinct senders of processed messages per bucket."""
    users: Dict[str, set] = {}
    for entry in entries:
        if entry.get("kind") != KIND_MESSAGE:
            continue
        key = period_key(entry.get("timestamp"), period)
        if key is not None:
            users.setdefault(key, set()).add(entry.get("userId"))
    return {key: len(ids) for key, ids in users.items()}


def registrations_by_period(entries: Iterable[Dict[str, Any]], period: str) -> Dict[str, Dict[str, int]]:
    entries = list(entries)
    return {
        "registrations": count_by_period(entries, KIND_REGISTRATION, period),
        "deletions": count_by_period(entries, KIND_REMOVAL, period),
    }


def total_messages(entries: Iterable[Dict[str, Any]]) -> int:
    return sum(1 for e in entries if e.get("kind") == KIND_MESSAGE)


# ===================== Student payment filter =====================

def counts_as_paid(debt: DebtSnapshot, current_month: int) -> bool:
    """Up to date, or owing only the month that is still running."""
    if debt.up_to_date:
        return True
    return (len(debt.pending_months) == 1
            and debt.pending_months[0] == UPPER_MONTHS[current_month - 1])


# ===================== Financial summary =====================

def tuition_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    result = {"total": 0.0, "pagado": 0.0, "pendiente": 0.0,
              "porMes": {month: 0.0 for month in UPPER_MONTHS}}
    for row in rows:
        for month in UPPER_MONTHS:
            value = _num(row.get(month))
            result["pagado"] += value
            result["porMes"][month] += value
        result["total"] += _num(row.get("MATRETRASADA")) + _num(row.get("TOTALAPAGAR"))
    result["pendiente"] = result["total"] - result["pagado"]
    return result


def books_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    result = {"total": 0.0, "pagado": 0.0, "pendiente": 0.0, "editoriales": {}}
    for row in rows:
        amount = _num(row.get("TOTALAPAGAR"))
        if amount <= 0:
            continue
        result["total"] += amount
        if row.get("ESTADO") == "PAGADO":
            publisher = row.get("EDITORIAL") or "SIN EDITORIAL"
            result["pagado"] += amount
            result["editoriales"][publisher] = result["editoriales"].get(publisher, 0.0) + amount
        else:
            result["pendiente"] += amount
    return result


def transport_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    # Transport is collected up front, so whatever was contributed counts as paid.
    result = {"total": 0.0, "pagado": 0.0, "pendiente": 0.0, "porMes": {}}
    for row in rows:
        contributed = _num(row.get("SUMAAPORT"))
        result["total"] += contributed
        result["pagado"] += contributed
        for column, month in TRANSPORT_MONTH_COLUMNS.items():
            result["porMes"][month] = result["porMes"].get(month, 0.0) + _num(row.get(column))
    result["pendiente"] = result["total"] - result["pagado"]
    return result


def income_distribution(tuition: Dict[str, Any], books: Dict[str, Any],
                        transport: Dict[str, Any]) -> Dict[str, str]:
    total = tuition["total"] + books["total"] + transport["total"]

    def share(part: float) -> str:
        return f"{(part / total) * 100:.2f}" if total else "0.00"

    return {
        "matriculas": share(tuition["total"]),
        "libros": share(books["total"]),
        "transporte": share(transport["total"]),
    }


def financial_summary(workbook: Workbook, now: datetime) -> Dict[str, Any]:
    tuition_rows = read_sheet_records(workbook, STUDENT_SHEET_NAME)
    book_rows = read_sheet_records(workbook, BOOKS_SHEET_NAME)
    transport_rows = read_sheet_records(workbook, TRANSPORT_SHEET_NAME)
    price_rows = read_sheet_records(workbook, "PRECIO VENTA LIBROS")
    delivery_rows = read_sheet_records(workbook, "ENTREGA 1 PAQUTES LIBROS")

    tuition = tuition_summary(tuition_rows)
    books = books_summary(book_rows)
    transport = transport_summary(transport_rows)

    return {
        "resumenGeneral": {
            "matriculas": tuition,
            "libros": books,
            "transporte": transport,
            "totalGeneral": tuition["total"] + books["total"] + transport["total"],
        },
        "distribucion": income_distribution(tuition, books, transport),
        "seriesTemporales": {
            "matriculas": tuition["porMes"],
            "transporte": transport["porMes"],
        },
        "detalleEditoriales": books["editoriales"],
        "preciosLibros": price_rows,
        "entregaPaquetes": delivery_rows,
        "metadata": {
            "ultimaActualizacion": now.isoformat(),
            "totalRegistros": {
                "matriculas": len(tuition_rows),
                "libros": len(book_rows),
                "transporte": len(transport_rows),
                "preciosLibros": len(price_rows),
                "entregaPaquetes": len(delivery_rows),
            },
        },
    }


# ===================== Dashboard =====================

def _overdue_days(row: Dict[str, Any]) -> int:
    try:
        return int(_num(row.get("DIASATRASO")))
    except (TypeError, ValueError, OverflowError):
        return 0


def overdue_bucket(days: int) -> str:
    if days > 60:
        return "+60"
    if days > 30:
        return "31-60"
    if days > 0:
        return "1-30"
    return "0"


def dashboard_analysis(workbook: Workbook, now: datetime) -> Dict[str, Any]:
    data = {name: read_sheet_records(workbook, name) for name in DASHBOARD_SHEETS}
    students = data[STUDENT_SHEET_NAME]
    total_students = len(students)

    distribution: Dict[str, Dict[str, int]] = {"level": {}, "year": {}, "gender": {}}
    for student in students:
        for bucket, column in (("level", "NIVEL"), ("year", "CICLO"), ("gender", "SEXO")):
            key = str(student.get(column) or UNKNOWN)
            distribution[bucket][key] = distribution[bucket].get(key, 0) + 1

    debts = [_num(s.get("DEUDA")) for s in students]
    positive = [d for d in debts if d > 0]
    total_debt = sum(debts)

    top_debtors = sorted(
        (s for s in students if _num(s.get("DEUDA")) > 0),
        key=lambda s: _num(s.get("DEUDA")),
        reverse=True,
    )[:10]

    histogram: Dict[str, int] = {}
    segmentation = {"alDia": 0, "morosos_1_30": 0, "morosos_31_60": 0, "morosos_60mas": 0, "conBeca": 0}
    for student in students:
        days = _overdue_days(student)
        bucket = overdue_bucket(days)
        histogram[bucket] = histogram.get(bucket, 0) + 1
        if days <= 0:
            segmentation["alDia"] += 1
        elif days <= 30:
            segmentation["morosos_1_30"] += 1
        elif days <= 60:
            segmentation["morosos_31_60"] += 1
        else:
            segmentation["morosos_60mas"] += 1
        if str(student.get("BECA") or "").strip().lower() == "si":
            segmentation["conBeca"] += 1

    return {
        "metadata": {
            "lastUpdated": now.isoformat(),
            "sheetNames": list(DASHBOARD_SHEETS),
            "recordCounts": {name: len(rows) for name, rows in data.items()},
        },
        "data": data,
        "analysis": {
            "totalStudents": total_students,
            "distribution": distribution,
            "totalDebt": total_debt,
            "studentsWithDebt": len(positive),
            "averageDebt": total_debt / len(positive) if positive else 0,
            "minDebt": min(positive) if positive else 0,
            "maxDebt": max(positive) if positive else 0,
            "topDebtors": top_debtors,
            "morosityRate": (len(positive) / total_students) * 100 if total_students else 0,
            "daysOverdueHistogram": histogram,
            "segmentation": segmentation,
        },
    }
