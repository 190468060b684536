# admin_api.py
import json
import logging
from datetime import datetime
from typing import Callable, Dict, List

from aiohttp import web

import financials
from audit_log import KIND_MESSAGE, AuditLog
from config import ADMIN_API_KEY
from errors import (
    AuthorizationDenied, CorruptSource, InvalidArgument, NotFound, SchoolBotError, SourceUnavailable,
)
from guardians import GuardianRegistry
from students import StudentDirectory, compute_debt
from workbook_cache import WorkbookCache

logger = logging.getLogger("admin_api")

_STATUS = {
    InvalidArgument: 400,
    AuthorizationDenied: 403,
    NotFound: 404,
    CorruptSource: 502,
    SourceUnavailable: 503,
}


def _status_for(exc: SchoolBotError) -> int:
    for cls, status in _STATUS.items():
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except SchoolBotError as e:
        status = _status_for(e)
        log = logger.warning if status < 500 else logger.error
        log("%s %s -> %d: %s", request.method, request.path, status, e)
        return web.json_response({"error": str(e)}, status=status)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": "Error interno del servidor"}, status=500)


class AdminApi:
    """Read-mostly admin endpoints over the registry, the audit log and the workbook."""

    def __init__(self, registry: GuardianRegistry, students: StudentDirectory, audit: AuditLog,
                 cache: WorkbookCache, clock: Callable[[], datetime] = datetime.now,
                 api_key: str = ADMIN_API_KEY):
        self.registry = registry
        self.students = students
        self.audit = audit
        self.cache = cache
        self.clock = clock
        self.api_key = api_key

    def register(self, app: web.Application) -> None:
        app.add_routes([
            web.get("/admin/users", self.list_users),
            web.get("/admin/students", self.list_students),
            web.get("/admin/users/{id}/history", self.user_history),
            web.get("/admin/students/{id}/debt", self.student_debt),
            web.get("/admin/stats/messages", self.stats_messages),
            web.get("/admin/stats/messages/total", self.stats_messages_total),
            web.get("/admin/stats/users", self.stats_users),
            web.get("/admin/stats/registrations", self.stats_registrations),
            web.get("/admin/stats/financial-summary", self.financial_summary),
            web.get("/admin/dashboard/dashboard-data", self.dashboard_data),
            web.post("/update-excel-url", self.update_excel_url),
        ])

    def _authorize(self, request: web.Request) -> None:
        if self.api_key and request.headers.get("X-Admin-Key") != self.api_key:
            raise AuthorizationDenied("forbidden")

    # ===================== Users & students =====================

    async def list_users(self, request: web.Request) -> web.Response:
        self._authorize(request)
        q = request.query
        users: List[Dict] = []
        for guardian_id, data in self.registry.records().items():
            students = list(data.get("alumnos", []) or [])
            active = data["activo"] if "activo" in data else bool(students)
            users.append({
                "id": guardian_id,
                "nombre": data.get("nombre", "") or "",
                "activo": active,
                "alumnos": students,
            })

        if q.get("nombre"):
            needle = q["nombre"].lower()
            users = [u for u in users if needle in u["nombre"].lower()]
        if q.get("id"):
            users = [u for u in users if q["id"] in u["id"]]
        if "activo" in q:
            wanted = q["activo"] == "true"
            users = [u for u in users if u["activo"] == wanted]
        return web.json_response(users)

    async def list_students(self, request: web.Request) -> web.Response:
        self._authorize(request)
        q = request.query
        records = await self.students.list_records()

        if q.get("nombre"):
            needle = q["nombre"].lower()
            records = [r for r in records if needle in r.name.lower()]
        if q.get("id"):
            records = [r for r in records if q["id"] in r.id]

        status = (q.get("estadoPago") or "").lower()
        if status:
            if status not in ("pagado", "deudor"):
                raise InvalidArgument("estadoPago debe ser 'pagado' o 'deudor'")
            now = self.clock()
            want_paid = status == "pagado"
            records = [
                r for r in records
                if r.id and financials.counts_as_paid(compute_debt(r, now), now.month) == want_paid
            ]

        return web.json_response([{"id": r.id, "nombre": r.name, "grado": r.grade} for r in records])

    async def user_history(self, request: web.Request) -> web.Response:
        self._authorize(request)
        return web.json_response(self.audit.history_for(request.match_info["id"]))

    async def student_debt(self, request: web.Request) -> web.Response:
        self._authorize(request)
        student_id = request.match_info["id"]
        record = await self.students.find_student(student_id)
        if record is None:
            raise NotFound("Estudiante no encontrado")
        debt = compute_debt(record, self.clock())
        return web.json_response({"estudiante": record.as_dict(), "deuda": debt.as_dict()})

    # ===================== Usage statistics =====================

    async def stats_messages(self, request: web.Request) -> web.Response:
        self._authorize(request)
        period = financials.parse_period(request.query.get("period"))
        return web.json_response(financials.count_by_period(self.audit.entries(), KIND_MESSAGE, period))

    async def stats_messages_total(self, request: web.Request) -> web.Response:
        self._authorize(request)
        return web.json_response({"total": financials.total_messages(self.audit.entries())})

    async def stats_users(self, request: web.Request) -> web.Response:
        self._authorize(request)
        period = financials.parse_period(request.query.get("period"))
        return web.json_response(financials.active_users_by_period(self.audit.entries(), period))

    async def stats_registrations(self, request: web.Request) -> web.Response:
        self._authorize(request)
        period = financials.parse_period(request.query.get("period"))
        return web.json_response(financials.registrations_by_period(self.audit.entries(), period))

    # ===================== Workbook analytics =====================

    async def financial_summary(self, request: web.Request) -> web.Response:
        self._authorize(request)
        workbook = await self.cache.get_workbook()
        return web.json_response(financials.financial_summary(workbook, self.clock()))

    async def dashboard_data(self, request: web.Request) -> web.Response:
        self._authorize(request)
        workbook = await self.cache.get_workbook()
        return web.json_response(financials.dashboard_analysis(workbook, self.clock()))

    # ===================== Source location =====================

    async def update_excel_url(self, request: web.Request) -> web.Response:
        self._authorize(request)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidArgument("Cuerpo JSON inválido") from e
        new_url = body.get("newUrl") if isinstance(body, dict) else None
        if isinstance(new_url, str):
            new_url = new_url.strip()
        self.cache.set_source_location(new_url)
        logger.info("Workbook source changed to %s", new_url)
        return web.json_response({"success": True, "message": "URL del Excel actualizada correctamente"})
