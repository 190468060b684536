import io
from datetime import datetime
from typing import Dict, List, Optional

import pytest
from openpyxl import Workbook as XlsxWorkbook
from openpyxl.utils import column_index_from_string

from audit_log import AuditLog
from broadcast import Broadcaster
from config import COLUMNS
from conversation import ConversationStore
from guardian_bot import GuardianBot
from guardians import AdminList, GuardianRegistry
from pins import PinValidator
from students import StudentDirectory
from transport import MediaDescriptor, Transport
from workbook_cache import WorkbookCache

NOW = datetime(2025, 3, 20, 10, 0)
ANA_ID = "0801201000001"
LUIS_ID = "0801201000002"
GUARDIAN = "50499990001"
ADMIN = "50499990099"


# ===================== Workbooks =====================

def xlsx_bytes(sheets: Dict[str, List[list]]) -> bytes:
    wb = XlsxWorkbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def student_row(name: str, grade: str, sid, fee, plan=None, months: Optional[Dict[str, object]] = None) -> list:
    row = [None] * column_index_from_string("AH")

    def put(col: str, value):
        row[column_index_from_string(col) - 1] = value

    put(COLUMNS["NOMBRE"], name)
    put(COLUMNS["GRADO"], grade)
    put(COLUMNS["ID"], sid)
    put(COLUMNS["PLAN"], plan)
    put(COLUMNS["TOTAL_PAGAR"], fee)
    for month, value in (months or {}).items():
        put(COLUMNS["MESES"][month.upper()], value)
    return row


def student_sheet(*rows: list) -> List[list]:
    header_1 = ["CUENTAS 2025"]
    header_2 = student_row("NOMBRE", "GRADO", "IDENTIDAD", "TOTAL A PAGAR", plan="PLAN")
    return [header_1, header_2, *rows]


def school_workbook() -> bytes:
    return xlsx_bytes({
        "MATRICULA 2025": student_sheet(
            student_row("Ana Lopez", "5to", ANA_ID, 1500, months={"enero": 1500}),
            student_row("Luis Lopez", "2do", LUIS_ID, "L. 1,000.00", plan=10,
                        months={"febrero": 1000, "marzo": 1000}),
        ),
    })


class FakeFetcher:
    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.calls = 0

    async def __call__(self, location: str, timeout: float) -> bytes:
        self.calls += 1
        item = self.payloads[0] if len(self.payloads) == 1 else self.payloads.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def no_sleep(_seconds):
    return None


async def no_pause():
    return None


# ===================== Transport =====================

class FakeTransport(Transport):
    def __init__(self, failing=()):
        self.sent: List[tuple] = []
        self.failing = set(failing)

    async def send_text(self, recipient_id: str, text: str) -> None:
        if recipient_id in self.failing:
            raise RuntimeError("send failed")
        self.sent.append((recipient_id, text))

    async def send_media(self, recipient_id: str, media: MediaDescriptor) -> None:
        if recipient_id in self.failing:
            raise RuntimeError("send failed")
        self.sent.append((recipient_id, media))

    def texts_to(self, recipient_id: str) -> List[str]:
        return [body for to, body in self.sent if to == recipient_id and isinstance(body, str)]


# ===================== Fixtures =====================

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def cache():
    return WorkbookCache("memory", fetcher=FakeFetcher(school_workbook()), sleep=no_sleep)


@pytest.fixture
def directory(cache):
    return StudentDirectory(cache)


@pytest.fixture
def relations_file(tmp_path):
    path = tmp_path / "relaciones.xlsx"
    path.write_bytes(xlsx_bytes({"Hoja1": [
        ["IDENTIDAD", "PIN"],
        [ANA_ID, "4321"],
        [LUIS_ID, 9876],
    ]}))
    return str(path)


@pytest.fixture
def registry(tmp_path):
    return GuardianRegistry(str(tmp_path / "encargados.json"))


@pytest.fixture
def audit(tmp_path):
    return AuditLog(str(tmp_path / "data" / "logs.json"), clock=lambda: NOW)


@pytest.fixture
def bot(transport, directory, relations_file, registry, audit):
    return GuardianBot(
        transport=transport,
        students=directory,
        pins=PinValidator(relations_file),
        registry=registry,
        states=ConversationStore(),
        audit=audit,
        admins=AdminList([ADMIN]),
        broadcaster=Broadcaster(transport, registry, pace=no_pause),
        pace=no_pause,
        clock=lambda: NOW,
        menu_return_delay=0,
        status_menu_delay=0,
    )
