# workbook_cache.py
import io
import os
import time
import asyncio
import logging
from itertools import zip_longest
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string
from openpyxl.worksheet.formula import ArrayFormula

from config import (
    CACHE_TTL_SECONDS, FETCH_ATTEMPTS, FETCH_BACKOFF_SECONDS, FETCH_TIMEOUT_SECONDS,
)
from errors import CorruptSource, InvalidArgument, SourceUnavailable
from sources import fetch_bytes

logger = logging.getLogger("workbook_cache")


class Formula(NamedTuple):
    """A formula cell: its cached numeric result and/or its cached text."""
    result: Optional[float]
    text: Optional[str]


# number | text | formula | date/bool passthrough | empty
CellValue = Union[int, float, str, Formula, object, None]
Row = Tuple[CellValue, ...]


class Sheet:
    def __init__(self, name: str, rows: List[Row]):
        self.name = name
        self._rows = rows

    def __len__(self) -> int:
        return len(self._rows)

    def iter_rows(self, min_row: int = 1) -> Iterator[Tuple[int, Row]]:
        """Yield (1-based row number, row) from min_row on."""
        for rnum, row in enumerate(self._rows[min_row - 1:], start=min_row):
            yield rnum, row

    @staticmethod
    def value(row: Row, column: Union[str, int]) -> CellValue:
        idx = column_index_from_string(column) if isinstance(column, str) else column
        return row[idx - 1] if 0 < idx <= len(row) else None


class Workbook:
    """Immutable parsed snapshot of an .xlsx document."""

    def __init__(self, sheets: List[Sheet]):
        self._sheets = sheets
        self._by_name: Dict[str, Sheet] = {s.name: s for s in sheets}

    @property
    def sheets(self) -> List[Sheet]:
        return list(self._sheets)

    @property
    def sheet_names(self) -> List[str]:
        return [s.name for s in self._sheets]

    def sheet(self, name: str) -> Optional[Sheet]:
        return self._by_name.get(name)

    def sheet_or_first(self, name: str) -> Optional[Sheet]:
        sheet = self._by_name.get(name)
        if sheet is None and self._sheets:
            sheet = self._sheets[0]
            logger.info('Sheet "%s" not found by name, using first sheet: %s', name, sheet.name)
        return sheet


def _merge_cell(formula_cell: object, value_cell: object) -> CellValue:
    is_formula = isinstance(formula_cell, ArrayFormula) or (
        isinstance(formula_cell, str) and formula_cell.startswith("=")
    )
    if not is_formula:
        return value_cell
    result = value_cell if isinstance(value_cell, (int, float)) and not isinstance(value_cell, bool) else None
    text = value_cell if isinstance(value_cell, str) else None
    return Formula(result=result, text=text)


def parse_workbook(raw: bytes) -> Workbook:
    """Fully parse .xlsx bytes. Raises CorruptSource on anything unreadable."""
    try:
        values_wb = load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
        formulas_wb = load_workbook(io.BytesIO(raw), read_only=True, data_only=False)
    except Exception as e:
        raise CorruptSource(f"El archivo descargado está corrupto o no es un archivo Excel válido: {e}") from e

    try:
        sheets: List[Sheet] = []
        for ws_values in values_wb.worksheets:
            ws_formulas = formulas_wb[ws_values.title]
            rows: List[Row] = []
            for vrow, frow in zip_longest(
                ws_values.iter_rows(values_only=True),
                ws_formulas.iter_rows(values_only=True),
                fillvalue=(),
            ):
                rows.append(tuple(
                    _merge_cell(f, v) for f, v in zip_longest(frow, vrow, fillvalue=None)
                ))
            sheets.append(Sheet(ws_values.title, rows))
    except Exception as e:
        raise CorruptSource(f"Error al leer el contenido del archivo Excel: {e}") from e
    finally:
        values_wb.close()
        formulas_wb.close()
    return Workbook(sheets)


def load_workbook_from_file(path: str) -> Workbook:
    if not path or not isinstance(path, str):
        raise InvalidArgument("La ruta del archivo debe ser una cadena no vacía.")
    if os.path.splitext(path)[1].lower() != ".xlsx":
        raise InvalidArgument("Solo se soportan archivos .xlsx. Por favor convierta el archivo .xls a .xlsx.")
    if not os.path.exists(path):
        raise InvalidArgument(f"El archivo no existe en la ruta especificada: {path}")
    with open(path, "rb") as fh:
        return parse_workbook(fh.read())


class WorkbookCache:
    """
    Time-boxed cache of the school workbook.

    - A refresh never replaces a good snapshot with a broken one.
    - Only one refresh runs at a time; while it runs, readers keep getting the
      previous snapshot if there is one.
    """

    def __init__(self, location: str, ttl_seconds: float = CACHE_TTL_SECONDS,
                 attempts: int = FETCH_ATTEMPTS, backoff_seconds: float = FETCH_BACKOFF_SECONDS,
                 timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
                 fetcher=fetch_bytes, clock=time.monotonic, sleep=asyncio.sleep):
        self._location = location
        self._ttl = ttl_seconds
        self._attempts = attempts
        self._backoff = backoff_seconds
        self._timeout = timeout_seconds
        self._fetcher = fetcher
        self._clock = clock
        self._sleep = sleep
        self._refresh_lock = asyncio.Lock()
        self._workbook: Optional[Workbook] = None
        self._fetched_at = 0.0
        self._generation = 0

    @property
    def location(self) -> str:
        return self._location

    @property
    def snapshot(self) -> Optional[Workbook]:
        return self._workbook

    def _is_fresh(self) -> bool:
        return self._workbook is not None and (self._clock() - self._fetched_at) <= self._ttl

    async def get_workbook(self) -> Workbook:
        if self._is_fresh():
            logger.debug("Usando caché existente del archivo Excel.")
            return self._workbook
        if self._refresh_lock.locked() and self._workbook is not None:
            logger.debug("Refresh in flight; serving previous snapshot.")
            return self._workbook
        async with self._refresh_lock:
            if self._is_fresh():
                return self._workbook
            return await self._refresh()

    def set_source_location(self, location: str) -> None:
        if not isinstance(location, str) or not location.strip():
            raise InvalidArgument("La nueva URL debe ser una cadena no vacía.")
        self._location = location.strip()
        self._workbook = None
        self._fetched_at = 0.0
        self._generation += 1
        logger.info("URL del archivo Excel actualizada a: %s", self._location)

    def reset(self) -> None:
        self._workbook = None
        self._fetched_at = 0.0
        self._generation += 1

    async def _download(self, location: str) -> bytes:
        for attempt in range(1, self._attempts + 1):
            try:
                logger.info("Intentando descargar archivo Excel (intento %d)...", attempt)
                raw = await self._fetcher(location, self._timeout)
                logger.info("Descarga exitosa.")
                return raw
            except Exception as e:
                logger.error("Error en descarga intento %d: %s", attempt, e)
                if attempt == self._attempts:
                    raise SourceUnavailable(
                        "No se pudo descargar el archivo Excel después de varios intentos."
                    ) from e
                await self._sleep(self._backoff)
        raise SourceUnavailable("No download attempts configured.")

    async def _refresh(self) -> Workbook:
        generation = self._generation
        location = self._location
        logger.info("Actualizando caché del archivo Excel...")
        raw = await self._download(location)
        loop = asyncio.get_running_loop()
        workbook = await loop.run_in_executor(None, parse_workbook, raw)
        if generation != self._generation:
            # Location changed mid-refresh; hand this result back but don't cache it.
            logger.info("Source location changed during refresh; discarding %s snapshot.", location)
            return workbook
        self._workbook = workbook
        self._fetched_at = self._clock()
        logger.info("Caché actualizada. Hojas disponibles: %s", ", ".join(workbook.sheet_names))
        return workbook
