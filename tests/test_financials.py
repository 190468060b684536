from datetime import datetime

import pytest

import financials
from students import DebtSnapshot
from workbook_cache import parse_workbook
from tests.conftest import xlsx_bytes

NOW = datetime(2025, 3, 20, 10, 0)


@pytest.fixture
def ledger():
    return parse_workbook(xlsx_bytes({
        "MATRICULA 2025": [
            ["NOMBRE", "NIVEL", "CICLO", "SEXO", "MAT. RETRASADA", "TOTAL A PAGAR",
             "ENERO", "FEBRERO", "DEUDA", "DIAS_ATRASO", "BECA"],
            ["Ana", "Primaria", "2025", "F", 0, 15000, 1500, None, 1500, 40, "Si"],
            [None] * 11,
            ["Luis", "Básica", "2025", "M", 200, 10000, 1000, 1000, 0, 0, "No"],
        ],
        "EDITORIALES 2025": [
            ["ALUMNO", "EDITORIAL", "TOTAL A PAGAR", "ESTADO"],
            ["Ana", "Santillana", 800, "PAGADO"],
            ["Luis", "Norma", 600, "PENDIENTE"],
            ["Pedro", None, 0, "PAGADO"],
        ],
        "INGRESO TES 2025": [
            ["ALUMNO", "SUMA APORT", "MARZO", "SEPT"],
            ["Ana", 500, 250, 250],
        ],
    }))


# ===================== Sheet rows =====================

@pytest.mark.parametrize("raw,expected", [
    ("Total a Pagar", "TOTALAPAGAR"),
    (" Mat. Retrasada ", "MATRETRASADA"),
    ("DIAS_ATRASO", "DIASATRASO"),
    (2025, "2025"),
])
def test_normalize_header(raw, expected):
    assert financials.normalize_header(raw) == expected


def test_read_sheet_records(ledger):
    rows = financials.read_sheet_records(ledger, "EDITORIALES 2025")
    assert rows[0] == {"ALUMNO": "Ana", "EDITORIAL": "Santillana", "TOTALAPAGAR": 800, "ESTADO": "PAGADO"}
    assert len(rows) == 3


def test_read_sheet_records_skips_blank_rows(ledger):
    assert len(financials.read_sheet_records(ledger, "MATRICULA 2025")) == 2


def test_missing_sheet_reads_empty(ledger):
    assert financials.read_sheet_records(ledger, "VIAJE AL CAJON") == []


# ===================== Audit statistics =====================

ENTRIES = [
    {"kind": "mensaje", "timestamp": "2025-03-14T08:00:00", "userId": "504001", "detail": ""},
    {"kind": "mensaje", "timestamp": "2025-03-14T09:00:00", "userId": "504001", "detail": ""},
    {"kind": "mensaje", "timestamp": "2025-03-17T09:00:00", "userId": "504002", "detail": ""},
    {"kind": "registro", "timestamp": "2025-03-14T09:05:00", "userId": "504001", "detail": ""},
    {"kind": "eliminacion", "timestamp": "2025-04-02T10:00:00", "userId": "504001", "detail": ""},
    {"kind": "mensaje", "timestamp": "garbage", "userId": "504003", "detail": ""},
]


@pytest.mark.parametrize("period,expected", [
    ("day", "2025-03-14"),
    ("week", "2025-W11"),
    ("month", "2025-03"),
])
def test_period_key(period, expected):
    assert financials.period_key("2025-03-14T10:00:00", period) == expected


def test_iso_week_belongs_to_iso_year():
    assert financials.period_key("2024-12-30T12:00:00", "week") == "2025-W01"


def test_parse_period_defaults_to_day():
    assert financials.parse_period("month") == "month"
    assert financials.parse_period("year") == "day"
    assert financials.parse_period(None) == "day"


def test_messages_by_period():
    assert financials.count_by_period(ENTRIES, "mensaje", "day") == {"2025-03-14": 2, "2025-03-17": 1}
    assert financials.count_by_period(ENTRIES, "mensaje", "week") == {"2025-W11": 2, "2025-W12": 1}


def test_active_users_are_distinct():
    assert financials.active_users_by_period(ENTRIES, "month") == {"2025-03": 2}


def test_registrations_and_deletions():
    assert financials.registrations_by_period(ENTRIES, "month") == {
        "registrations": {"2025-03": 1},
        "deletions": {"2025-04": 1},
    }


def test_total_messages():
    assert financials.total_messages(ENTRIES) == 4


# ===================== Payment filter =====================

def snapshot(*pending):
    return DebtSnapshot(pending_months=pending, monthly_fee=1000.0, late_fee=0.0,
                        tuition_debt=1000.0 * len(pending), total_debt=1000.0 * len(pending),
                        up_to_date=not pending)


def test_owing_only_current_month_counts_as_paid():
    assert financials.counts_as_paid(snapshot(), 3)
    assert financials.counts_as_paid(snapshot("MARZO"), 3)
    assert not financials.counts_as_paid(snapshot("FEBRERO"), 3)
    assert not financials.counts_as_paid(snapshot("FEBRERO", "MARZO"), 3)


# ===================== Financial summary =====================

def test_financial_summary(ledger):
    summary = financials.financial_summary(ledger, NOW)
    general = summary["resumenGeneral"]

    assert general["matriculas"]["total"] == 25200
    assert general["matriculas"]["pagado"] == 3500
    assert general["matriculas"]["pendiente"] == 21700
    assert summary["seriesTemporales"]["matriculas"]["ENERO"] == 2500
    assert summary["seriesTemporales"]["matriculas"]["DICIEMBRE"] == 0

    assert general["libros"] == {
        "total": 1400, "pagado": 800, "pendiente": 600, "editoriales": {"Santillana": 800},
    }
    assert general["transporte"]["total"] == 500
    assert general["transporte"]["pendiente"] == 0
    assert summary["seriesTemporales"]["transporte"]["SEPTIEMBRE"] == 250
    assert general["totalGeneral"] == 27100

    assert summary["distribucion"] == {"matriculas": "92.99", "libros": "5.17", "transporte": "1.85"}
    assert summary["metadata"]["totalRegistros"]["matriculas"] == 2
    assert summary["metadata"]["ultimaActualizacion"] == NOW.isoformat()


def test_income_distribution_with_no_income():
    empty = {"total": 0.0}
    assert financials.income_distribution(empty, empty, empty) == {
        "matriculas": "0.00", "libros": "0.00", "transporte": "0.00",
    }


# ===================== Dashboard =====================

@pytest.mark.parametrize("days,bucket", [(0, "0"), (1, "1-30"), (30, "1-30"), (31, "31-60"), (61, "+60")])
def test_overdue_bucket(days, bucket):
    assert financials.overdue_bucket(days) == bucket


def test_dashboard_analysis(ledger):
    result = financials.dashboard_analysis(ledger, NOW)
    analysis = result["analysis"]

    assert analysis["totalStudents"] == 2
    assert analysis["distribution"]["level"] == {"Primaria": 1, "Básica": 1}
    assert analysis["distribution"]["year"] == {"2025": 2}
    assert analysis["totalDebt"] == 1500
    assert analysis["studentsWithDebt"] == 1
    assert analysis["averageDebt"] == 1500
    assert [s["NOMBRE"] for s in analysis["topDebtors"]] == ["Ana"]
    assert analysis["morosityRate"] == 50
    assert analysis["daysOverdueHistogram"] == {"31-60": 1, "0": 1}
    assert analysis["segmentation"]["morosos_31_60"] == 1
    assert analysis["segmentation"]["alDia"] == 1
    assert analysis["segmentation"]["conBeca"] == 1
    assert result["metadata"]["recordCounts"]["VIAJE AL CAJON"] == 0
