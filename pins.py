# pins.py
import asyncio
import logging

from config import RELATIONS_FILE
from students import norm_id
from workbook_cache import Sheet, load_workbook_from_file

logger = logging.getLogger("pins")


class PinValidator:
    """Checks a PIN against the relation workbook (column A: student id, column B: PIN)."""

    def __init__(self, relations_path: str = RELATIONS_FILE):
        self.relations_path = relations_path

    def _validate_sync(self, student_id: str, pin: str) -> bool:
        workbook = load_workbook_from_file(self.relations_path)
        if not workbook.sheets:
            return False
        sheet = workbook.sheets[0]
        wanted_id = norm_id(student_id)
        wanted_pin = str(pin).strip()
        for _, row in sheet.iter_rows(min_row=2):
            if (norm_id(Sheet.value(row, 1)) == wanted_id
                    and norm_id(Sheet.value(row, 2)) == wanted_pin):
                return True
        return False

    async def validate_pin(self, student_id: str, pin: str) -> bool:
        """Never raises: any read or parse failure counts as an invalid PIN."""
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._validate_sync, student_id, pin)
        except Exception:
            logger.exception("Error al validar PIN para %s", student_id)
            return False
