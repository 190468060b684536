# config.py
import os
import re
import logging
from datetime import datetime
from typing import Dict, Set
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

_log_level = logging.DEBUG if str(os.getenv("DEBUG", "0")).strip().lower() in {"1", "true", "yes"} else logging.INFO
logging.basicConfig(level=_log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("config")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.getenv("DATA_DIR", os.path.join(BASE_DIR, "data"))

# ========================= Spreadsheet =========================
EXCEL_URL = os.getenv(
    "EXCEL_URL",
    "https://www.dropbox.com/scl/fi/ib25r1mh25ybbfrh15e6e/CUENTAS-A-O-2025-IJCV.xlsx?dl=1",
)
STUDENT_SHEET_NAME = os.getenv("STUDENT_SHEET_NAME", "MATRICULA 2025")
BOOKS_SHEET_NAME = os.getenv("BOOKS_SHEET_NAME", "EDITORIALES 2025")
TRANSPORT_SHEET_NAME = os.getenv("TRANSPORT_SHEET_NAME", "INGRESO TES 2025")
RELATIONS_FILE = os.getenv("RELATIONS_FILE", os.path.join(BASE_DIR, "relaciones.xlsx"))

CACHE_TTL_SECONDS = 60 * 60
FETCH_ATTEMPTS = 3
FETCH_BACKOFF_SECONDS = 2
FETCH_TIMEOUT_SECONDS = 15

# First data row of the student sheet (rows 1-2 are headers)
FIRST_DATA_ROW = 3

COLUMNS = {
    "NOMBRE": "A",
    "GRADO": "B",
    "ID": "F",
    "PLAN": "H",
    "TOTAL_PAGAR": "N",
    "MESES": {
        "ENERO": "W", "FEBRERO": "X", "MARZO": "Y", "ABRIL": "Z",
        "MAYO": "AA", "JUNIO": "AB", "JULIO": "AC", "AGOSTO": "AD",
        "SEPTIEMBRE": "AE", "OCTUBRE": "AF", "NOVIEMBRE": "AG", "DICIEMBRE": "AH",
    },
}

# ========================= Persisted state =========================
GUARDIANS_FILE = os.getenv("GUARDIANS_FILE", os.path.join(BASE_DIR, "encargados.json"))
AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", os.path.join(DATA_DIR, "logs.json"))
ADMINS_FILE = os.getenv("ADMINS_FILE", os.path.join(BASE_DIR, "admins.json"))

# ========================= WhatsApp Cloud API =========================
WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN", "")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
GRAPH_API_VERSION = os.getenv("GRAPH_API_VERSION", "v19.0")

PORT = int(os.getenv("PORT", "3000"))
# When set, /admin routes and /update-excel-url require header X-Admin-Key
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
TIMEZONE = os.getenv("TIMEZONE", "America/Tegucigalpa")


def local_now() -> datetime:
    """Wall-clock time in the school's timezone; greetings and due dates use this."""
    return datetime.now(ZoneInfo(TIMEZONE))

# ========================= Admins =========================
def _parse_admin_ids(raw: str) -> Set[str]:
    ids: Set[str] = set()
    for tok in re.split(r"[,\s]+", raw.strip().strip("'").strip('"')):
        tok = tok.strip().lstrip("+")
        if tok and tok.isdigit():
            ids.add(tok)
    return ids

ADMIN_IDS: Set[str] = _parse_admin_ids(os.getenv("ADMIN_IDS", ""))

# ========================= School info =========================
SCHOOL_INFO: Dict[str, str] = {
    "nombre": os.getenv("SCHOOL_NAME", "Instituto Jose Cecilio Del Valle"),
    "direccion": "https://acortar.link/ijUbNm",
    "telefono": "http://wa.me/50495031205",
    "email": "contacto@josececiliodelvalle.edu.hn",
    "horario": "Lunes a Viernes: 7:00 AM - 4:00 PM",
    "sitioWeb": "www.JoseCecilioDelValle.edu.hn",
    "bac": "730043231",
    "occidente": "11-402-004148-5",
}


def log_startup_banner():
    logger.info("School payment bot starting with:")
    logger.info(f"  EXCEL_URL={EXCEL_URL}")
    logger.info(f"  STUDENT_SHEET_NAME={STUDENT_SHEET_NAME}")
    logger.info(f"  RELATIONS_FILE={RELATIONS_FILE}")
    logger.info(f"  GUARDIANS_FILE={GUARDIANS_FILE}")
    logger.info(f"  AUDIT_LOG_FILE={AUDIT_LOG_FILE}")
    logger.info(f"  DEBUG={'ON' if _log_level == logging.DEBUG else 'OFF'}")
    if ADMIN_IDS:
        logger.info(f"  ADMIN_IDS (count={len(ADMIN_IDS)}): {sorted(ADMIN_IDS)}")
