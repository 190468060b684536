# sources.py
import os
import json
import base64
import asyncio
import logging

import aiohttp
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build

logger = logging.getLogger("sources")

SCOPES = ['https://www.googleapis.com/auth/drive.readonly']
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
ACCEPTED_CONTENT_TYPES = (XLSX_MIME, "application/binary", "application/octet-stream")
GSHEET_PREFIX = "gsheet:"


class FetchError(Exception):
    """One failed attempt at reading a workbook location."""


# ===================== Google Drive export =====================

def _load_gcp_credentials() -> Credentials:
    path = os.getenv("GOOGLE_CREDENTIALS_FILE")
    if path and os.path.exists(path):
        return Credentials.from_service_account_file(path, scopes=SCOPES)

    b64 = os.getenv("GOOGLE_CREDENTIALS_JSON_B64")
    if b64:
        info = json.loads(base64.b64decode(b64.strip().strip('"').strip("'")).decode("utf-8"))
        return Credentials.from_service_account_info(info, scopes=SCOPES)

    raw = os.getenv("GOOGLE_CREDENTIALS_JSON")
    if raw:
        info = json.loads(raw)
        return Credentials.from_service_account_info(info, scopes=SCOPES)

    raise RuntimeError("No Google credentials provided. Set GOOGLE_CREDENTIALS_FILE or GOOGLE_CREDENTIALS_JSON_B64 or GOOGLE_CREDENTIALS_JSON.")


def _export_spreadsheet_sync(spreadsheet_id: str) -> bytes:
    creds = _load_gcp_credentials()
    service = build('drive', 'v3', credentials=creds, cache_discovery=False)
    return service.files().export_media(fileId=spreadsheet_id, mimeType=XLSX_MIME).execute()


async def _fetch_gsheet(spreadsheet_id: str, timeout: float) -> bytes:
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, _export_spreadsheet_sync, spreadsheet_id),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise FetchError(f"Drive export timed out after {timeout}s") from e
    except Exception as e:
        raise FetchError(f"Drive export failed: {e}") from e


# ===================== Plain HTTP download =====================

async def _fetch_http(url: str, timeout: float) -> bytes:
    headers = {"Accept": f"{XLSX_MIME}, application/octet-stream"}
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url, headers=headers) as resp:
                if resp.status != 200:
                    raise FetchError(f"HTTP {resp.status} from {url}")
                content_type = resp.headers.get("Content-Type", "")
                if not any(t in content_type for t in ACCEPTED_CONTENT_TYPES):
                    raise FetchError(f"Tipo de contenido inesperado: {content_type}")
                return await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise FetchError(f"Download failed: {e}") from e


def _read_local(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as e:
        raise FetchError(f"Cannot read {path}: {e}") from e


async def fetch_bytes(location: str, timeout: float) -> bytes:
    """Read the raw workbook bytes behind a location (URL, gsheet:<id> or path)."""
    if location.startswith(GSHEET_PREFIX):
        return await _fetch_gsheet(location[len(GSHEET_PREFIX):].strip(), timeout)
    if location.lower().startswith(("http://", "https://")):
        return await _fetch_http(location, timeout)
    return _read_local(location)
