# guardian_bot.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from audit_log import KIND_MESSAGE, KIND_REGISTRATION, KIND_REMOVAL, AuditLog
from broadcast import Broadcaster, human_pause
from config import SCHOOL_INFO
from conversation import ConversationStore, State
from errors import CorruptSource, SourceUnavailable
from guardians import AdminList, GuardianRegistry
from pins import PinValidator
from students import StudentDirectory, StudentRecord, billing_window, compute_debt, is_valid_student_id
from transport import InboundMessage, Transport

logger = logging.getLogger("guardian_bot")

BROADCAST_PREFIXES = ("broadcast ", "bc ")
MENU_WORDS = {"menu", "menú"}
MENU_RETURN_DELAY = 1.5
STATUS_MENU_DELAY = 15

# ========================= Texts =========================
WELCOME_TEXT = (
    "🐺 ¡Hola! Soy Chilo el lobo asistente virtual del Instituto José Cecilio del Valle.\n"
    "Estoy aquí para ayudarte. ¿En qué puedo asistirte hoy? 📚✨."
)
LOOKUP_FAILED_TEXT = "❌ No pudimos consultar la información en este momento. Por favor contacte a administración."
GENERIC_ERROR_TEXT = "❌ Ocurrió un error procesando su mensaje. Por favor intente de nuevo o contacte a administración."
NOT_ADMIN_TEXT = "❌ No tiene permisos para enviar mensajes broadcast."
INVALID_OPTION_TEXT = "❓ Opción no válida. Por favor seleccione una opción del menú."
INVALID_INDEX_TEXT = "❌ Opción no válida. Por favor seleccione un número de la lista."
REGISTER_PROMPT_TEXT = "📝 *REGISTRO DE ALUMNO*\n\nPor favor, ingrese el número de identidad del alumno (13 dígitos):"
BAD_ID_FORMAT_TEXT = (
    "❌ Formato incorrecto. El número de identidad debe tener 13 dígitos numéricos.\n\n"
    "Intente nuevamente o escriba *menú* para volver al menú principal."
)
UNKNOWN_ID_TEXT = "❌ El número de identidad no está registrado en el sistema. Verifique e intente nuevamente."
BAD_PIN_TEXT = "❌ PIN incorrecto. Verifique e intente nuevamente o escriba *menú* para volver al menú principal."
BROADCAST_PROMPT_TEXT = (
    "📢 *MENÚ BROADCAST ADMIN*\n\nPor favor, envíe cualquier mensaje (texto, foto, video, etc.) "
    "para enviarlo a todos los encargados.\nEscriba *menú* para volver al menú principal."
)


@dataclass
class Turn:
    sender: str
    text: str
    message: InboundMessage
    students: List[str]
    is_admin: bool
    first_of_day: bool = False


MenuHandler = Callable[["GuardianBot", Turn], Awaitable[None]]


@dataclass(frozen=True)
class MenuOption:
    key: str
    label: str
    handler: MenuHandler
    visible: Callable[[Turn], bool] = field(default=lambda turn: True)


class GuardianBot:
    """
    Menu-driven dialogue for guardians.

    One instance serves every sender; per-sender ordering comes from
    SenderDispatcher, so a turn always sees the state left by the previous one.
    """

    def __init__(self, transport: Transport, students: StudentDirectory, pins: PinValidator,
                 registry: GuardianRegistry, states: ConversationStore, audit: AuditLog,
                 admins: AdminList, broadcaster: Broadcaster,
                 menu: Optional[Sequence[MenuOption]] = None,
                 school_info: Optional[Dict[str, str]] = None,
                 pace: Callable[[], Awaitable[None]] = human_pause,
                 clock: Callable[[], datetime] = datetime.now,
                 menu_return_delay: float = MENU_RETURN_DELAY,
                 status_menu_delay: float = STATUS_MENU_DELAY):
        self.transport = transport
        self.students = students
        self.pins = pins
        self.registry = registry
        self.states = states
        self.audit = audit
        self.admins = admins
        self.broadcaster = broadcaster
        self.menu: Tuple[MenuOption, ...] = tuple(menu if menu is not None else DEFAULT_MENU)
        self._menu_by_key = {opt.key: opt for opt in self.menu}
        self.school_info = school_info or SCHOOL_INFO
        self.pace = pace
        self.clock = clock
        self.menu_return_delay = menu_return_delay
        self.status_menu_delay = status_menu_delay
        self._menu_timers: Dict[str, asyncio.Task] = {}

    # ===================== Sending =====================

    async def _reply(self, to: str, text: str) -> None:
        await self.pace()
        await self.transport.send_text(to, text)

    async def _safe_send(self, to: str, text: str) -> None:
        try:
            await self.transport.send_text(to, text)
        except Exception as e:
            logger.error("Could not send message to %s: %s", to, e)

    def _menu_text(self, turn: Turn) -> str:
        msg = "🏫 *BIENVENIDO AL SISTEMA ESCOLAR*\n\n"
        if turn.students:
            msg += f"👨‍👩‍👧‍👦 Tiene {len(turn.students)} alumno(s) registrado(s)\n\n"
        msg += "Seleccione una opción:\n\n"
        for opt in self.menu:
            if opt.visible(turn):
                msg += f"{opt.key}️⃣ {opt.label}\n"
        msg += "\nResponda con el número de la opción deseada."
        return msg

    async def send_main_menu(self, to: str) -> None:
        turn = Turn(sender=to, text="", message=InboundMessage(sender_id=to),
                    students=self.registry.students_of(to), is_admin=self.admins.is_admin(to))
        self.states.set_state(to, State.MENU_PRINCIPAL)
        await self.transport.send_text(to, self._menu_text(turn))

    # ===================== Return-to-menu timers =====================

    def _schedule_menu(self, sender: str, delay: float) -> None:
        """Finish the current flow now; only the menu message itself is delayed."""
        self._cancel_menu_timer(sender)
        self.states.set_state(sender, State.MENU_PRINCIPAL, {})
        self._menu_timers[sender] = asyncio.create_task(self._menu_after(sender, delay))

    def _cancel_menu_timer(self, sender: str) -> None:
        task = self._menu_timers.pop(sender, None)
        if task is not None and not task.done():
            task.cancel()

    async def _menu_after(self, sender: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.send_main_menu(sender)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled menu for %s failed", sender)
        finally:
            if self._menu_timers.get(sender) is asyncio.current_task():
                del self._menu_timers[sender]

    async def wait_for_timers(self) -> None:
        tasks = list(self._menu_timers.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_timers(self) -> None:
        for sender in list(self._menu_timers):
            self._cancel_menu_timer(sender)

    # ===================== Turn boundary =====================

    async def handle_message(self, message: InboundMessage) -> None:
        """Process one inbound message. Never raises."""
        sender = message.sender_id
        self._cancel_menu_timer(sender)
        try:
            await self._process_turn(message)
        except (SourceUnavailable, CorruptSource) as e:
            logger.error("Workbook unavailable while serving %s: %s", sender, e)
            await self._safe_send(sender, LOOKUP_FAILED_TEXT)
        except Exception:
            logger.exception("Unhandled error processing message from %s", sender)
            await self._safe_send(sender, GENERIC_ERROR_TEXT)

    async def _process_turn(self, message: InboundMessage) -> None:
        sender = message.sender_id
        text = (message.text or "").strip()
        lowered = text.lower()

        self.audit.append(KIND_MESSAGE, sender, f"Mensaje procesado: {text}")

        today = self.clock().date().isoformat()
        first_of_day = False
        if self.states.last_greeting(sender) != today:
            first_of_day = True
            self.states.set_last_greeting(sender, today)
            await self._reply(sender, WELCOME_TEXT)
            self.states.set_state(sender, State.MENU_PRINCIPAL)
            await self.send_main_menu(sender)
            return

        is_admin = self.admins.is_admin(sender)
        current = self.states.get(sender)

        if current.state == State.MENU_ADMIN_BROADCAST:
            if not is_admin:
                logger.info("User %s is not admin, broadcast denied.", sender)
                await self._reply(sender, NOT_ADMIN_TEXT)
                await self.send_main_menu(sender)
                return
            sent = await self.broadcaster.broadcast(message)
            await self._reply(sender, f"✅ Se mandaron {sent} encargados.")
            await self.send_main_menu(sender)
            return

        prefix = next((p for p in BROADCAST_PREFIXES if lowered.startswith(p)), None)
        if prefix:
            if not is_admin:
                logger.info("User %s is not admin, broadcast denied.", sender)
                await self._reply(sender, NOT_ADMIN_TEXT)
                return
            sent = await self.broadcaster.broadcast(text[len(prefix):].strip())
            await self._reply(sender, f"✅ Se mandaron {sent} encargados.")
            return

        if lowered in MENU_WORDS:
            await self.send_main_menu(sender)
            return

        turn = Turn(sender=sender, text=text, message=message,
                    students=self.registry.students_of(sender), is_admin=is_admin,
                    first_of_day=first_of_day)

        handler = self._state_handlers.get(current.state)
        if handler is None:
            await self.send_main_menu(sender)
            return
        await handler(self, turn, current.data)

    # ===================== State handlers =====================

    async def _on_main_menu(self, turn: Turn, data: Dict) -> None:
        option = self._menu_by_key.get(turn.text)
        if option is None:
            await self._unknown_option(turn)
            return
        await option.handler(self, turn)

    async def _unknown_option(self, turn: Turn) -> None:
        # The greeting branch returns before any state handler runs, so this is
        # always False today; it keeps the no-scolding-after-greeting rule explicit.
        if not turn.first_of_day:
            await self._reply(turn.sender, INVALID_OPTION_TEXT)
        await self.send_main_menu(turn.sender)

    async def _on_registration_id(self, turn: Turn, data: Dict) -> None:
        if not is_valid_student_id(turn.text):
            await self._reply(turn.sender, BAD_ID_FORMAT_TEXT)
            return
        record = await self.students.find_student(turn.text)
        if record is None:
            await self._reply(turn.sender, UNKNOWN_ID_TEXT)
            return
        self.states.set_state(turn.sender, State.REGISTRO_PIN, {"idEstudiante": turn.text})
        await self._reply(
            turn.sender,
            f"✅ *Alumno encontrado:* {record.name}\n\nAhora ingrese el PIN de autorización:",
        )

    async def _on_registration_pin(self, turn: Turn, data: Dict) -> None:
        student_id = data.get("idEstudiante")
        if not student_id:
            await self.send_main_menu(turn.sender)
            return
        if not await self.pins.validate_pin(student_id, turn.text):
            await self._reply(turn.sender, BAD_PIN_TEXT)
            return

        if not self.registry.link(turn.sender, student_id):
            await self._reply(turn.sender, "❌ No se pudo completar el registro. Por favor contacte a administración.")
            await self.send_main_menu(turn.sender)
            return
        self.audit.append(KIND_REGISTRATION, turn.sender, f"Alumno registrado: {student_id}")

        name = await self._student_name(student_id)
        await self._reply(
            turn.sender,
            f"✅ *REGISTRO EXITOSO*\n\nEl alumno *{name}* ha sido vinculado a su número.\n\n"
            "Ya puede consultar su estado de pagos desde el menú principal.",
        )
        self._schedule_menu(turn.sender, self.menu_return_delay)

    def _pick(self, turn: Turn, data: Dict) -> Optional[str]:
        ids = data.get("alumnos") or []
        if not turn.text.isdigit():
            return None
        idx = int(turn.text) - 1
        if idx < 0 or idx >= len(ids):
            return None
        return ids[idx]

    async def _on_select_student(self, turn: Turn, data: Dict) -> None:
        student_id = self._pick(turn, data)
        if student_id is None:
            await self._reply(turn.sender, INVALID_INDEX_TEXT)
            return
        record = await self.students.find_student(student_id)
        if record is None:
            await self._reply(turn.sender, "❌ No se encontró información del alumno seleccionado. Por favor contacte a administración.")
            await self.send_main_menu(turn.sender)
            return
        await self._reply(turn.sender, self.payment_status_text(record))
        self._schedule_menu(turn.sender, self.menu_return_delay)

    async def _on_remove_student(self, turn: Turn, data: Dict) -> None:
        student_id = self._pick(turn, data)
        if student_id is None:
            await self._reply(turn.sender, INVALID_INDEX_TEXT)
            return
        name = await self._student_name(student_id)
        if self.registry.unlink(turn.sender, student_id):
            self.audit.append(KIND_REMOVAL, turn.sender, f"Alumno eliminado: {student_id}")
            await self._reply(turn.sender, f"✅ El alumno *{name}* ha sido eliminado de su cuenta correctamente.")
        else:
            await self._reply(turn.sender, "❌ Error al eliminar el alumno. Por favor contacte a administración.")
        self._schedule_menu(turn.sender, self.menu_return_delay)

    _state_handlers = {
        State.MENU_PRINCIPAL: _on_main_menu,
        State.REGISTRO_ID: _on_registration_id,
        State.REGISTRO_PIN: _on_registration_pin,
        State.SELECCION_ALUMNO: _on_select_student,
        State.ELIMINAR_ALUMNO: _on_remove_student,
    }

    # ===================== Menu options =====================

    async def option_register(self, turn: Turn) -> None:
        self.states.set_state(turn.sender, State.REGISTRO_ID, {})
        await self._reply(turn.sender, REGISTER_PROMPT_TEXT)

    async def option_payment_status(self, turn: Turn) -> None:
        if not turn.students:
            await self._reply(turn.sender, "❌ No tiene alumnos registrados. Seleccione la opción 1️⃣ para registrar un alumno.")
            await self.send_main_menu(turn.sender)
            return
        if len(turn.students) == 1:
            record = await self.students.find_student(turn.students[0])
            if record is None:
                await self._reply(turn.sender, "❌ No se encontró información del alumno registrado. Por favor contacte a administración.")
                await self.send_main_menu(turn.sender)
                return
            await self._reply(turn.sender, self.payment_status_text(record))
            self._schedule_menu(turn.sender, self.status_menu_delay)
            return
        listing = await self._student_list(turn.students)
        self.states.set_state(turn.sender, State.SELECCION_ALUMNO, {"alumnos": list(turn.students)})
        await self._reply(
            turn.sender,
            "👨‍👩‍👧‍👦 *SELECCIONE ALUMNO*\n\n" + listing
            + "\nResponda con el número del alumno para ver su estado de pagos.",
        )

    async def option_school_info(self, turn: Turn) -> None:
        info = self.school_info
        msg = "📚 *INFORMACIÓN DE LA ESCUELA*\n\n"
        msg += f"*{info['nombre']}*\n\n"
        msg += f"📍 *Dirección:* {info['direccion']}\n"
        msg += f"📞 *Teléfono:* {info['telefono']}\n"
        msg += f"📧 *Email:* {info['email']}\n"
        msg += f"⏰ *Horario:* {info['horario']}\n"
        msg += f"🌐 *Sitio Web:* {info['sitioWeb']}\n\n"
        msg += "🏦 *Cuentas Bancarias:*\n"
        msg += f"⚪ *BAC:* {info['bac']}\n"
        msg += f"⚪ *Occidente:* {info['occidente']}\n"
        msg += "Escriba *menú* para volver al menú principal."
        await self._reply(turn.sender, msg)

    async def option_contact(self, turn: Turn) -> None:
        info = self.school_info
        msg = "📞 *CONTACTAR ADMINISTRACIÓN*\n\n"
        msg += "Para consultas administrativas puede comunicarse al:\n"
        msg += f"📱 *WhatsApp:* {info['telefono']}\n"
        msg += f"📧 *Email:* {info['email']}\n\n"
        msg += "⏰ *Horario de atención:*\n"
        msg += f"{info['horario']}\n\n"
        msg += "Escriba *menú* para volver al menú principal."
        await self._reply(turn.sender, msg)

    async def option_remove_student(self, turn: Turn) -> None:
        if not turn.students:
            await self._reply(turn.sender, "❌ No tiene alumnos registrados para eliminar.")
            await self.send_main_menu(turn.sender)
            return
        listing = await self._student_list(turn.students)
        self.states.set_state(turn.sender, State.ELIMINAR_ALUMNO, {"alumnos": list(turn.students)})
        await self._reply(
            turn.sender,
            "🗑️ *ELIMINAR ALUMNO*\n\n" + listing
            + "\nResponda con el número del alumno que desea eliminar de su cuenta.",
        )

    async def option_broadcast(self, turn: Turn) -> None:
        if not turn.is_admin:
            await self._reply(turn.sender, "❌ Opción no válida.")
            await self.send_main_menu(turn.sender)
            return
        self.states.set_state(turn.sender, State.MENU_ADMIN_BROADCAST, {})
        await self._reply(turn.sender, BROADCAST_PROMPT_TEXT)

    # ===================== Rendering helpers =====================

    async def _student_name(self, student_id: str) -> str:
        try:
            record = await self.students.find_student(student_id)
        except (SourceUnavailable, CorruptSource) as e:
            logger.warning("Could not resolve name for %s: %s", student_id, e)
            record = None
        return record.name if record else student_id

    async def _student_list(self, ids: Sequence[str]) -> str:
        lines = []
        for i, student_id in enumerate(ids, start=1):
            record = await self.students.find_student(student_id)
            if record:
                lines.append(f"{i}. {record.name} - {record.grade}")
            else:
                lines.append(f"{i}. {student_id} (sin información)")
        return "\n".join(lines) + "\n"

    def payment_status_text(self, record: StudentRecord) -> str:
        now = self.clock()
        debt = compute_debt(record, now)
        msg = f"📊 *ESTADO DE PAGOS - {record.name.upper()}*\n"
        msg += f"🏫 Grado: {record.grade}\n\n"
        for _, month in billing_window(record.plan, now.month):
            amount = record.months.get(month)
            status = f"L.{amount:.2f} ✅ Pagado" if amount is not None else "❌ Pendiente"
            msg += f"▫️ {month.capitalize()}: {status}\n"
        d = debt.as_dict()
        msg += f"\n💵 Cuota mensual: L.{d['cuotaMensual']}"
        msg += f"\n📅 Meses pendientes: {len(debt.pending_months)}"
        if debt.up_to_date:
            msg += "\n\n✅ *AL DÍA EN PAGOS*"
        else:
            msg += (
                f"\n\n❌ *DEUDA MENSUALIDAD: L.{d['deudaMensualidad']}*"
                f"\n❌ *DEUDA MORA: L.{d['deudaMora']}*"
                f"\n❌ *DEUDA TOTAL: L.{d['totalDeuda']}*"
            )
        return msg


DEFAULT_MENU: Tuple[MenuOption, ...] = (
    MenuOption("1", "*Registrar* nuevo alumno", GuardianBot.option_register),
    MenuOption("2", "*Consultar* estado de pagos", GuardianBot.option_payment_status),
    MenuOption("3", "*Información* de la escuela", GuardianBot.option_school_info),
    MenuOption("4", "*Contactar* administración", GuardianBot.option_contact),
    MenuOption("5", "*Eliminar* alumno de mi cuenta", GuardianBot.option_remove_student,
               visible=lambda turn: bool(turn.students)),
    MenuOption("6", "*Broadcast Admin*", GuardianBot.option_broadcast,
               visible=lambda turn: turn.is_admin),
)


# ===================== Per-sender dispatch =====================

class SenderDispatcher:
    """
    One FIFO queue and one worker task per sender: turns from the same sender
    run strictly in order, different senders run concurrently. Idle workers
    exit after idle_timeout seconds.
    """

    def __init__(self, handler: Callable[[InboundMessage], Awaitable[None]], idle_timeout: float = 300):
        self.handler = handler
        self.idle_timeout = idle_timeout
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def submit(self, message: InboundMessage) -> None:
        sender = message.sender_id
        queue = self._queues.get(sender)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[sender] = queue
            self._workers[sender] = asyncio.create_task(self._run(sender, queue))
        queue.put_nowait(message)

    async def _run(self, sender: str, queue: asyncio.Queue) -> None:
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    if queue.empty():
                        break
                    continue
                try:
                    await self.handler(message)
                except Exception:
                    logger.exception("Dispatcher handler failed for %s", sender)
                finally:
                    queue.task_done()
        finally:
            if self._queues.get(sender) is queue:
                del self._queues[sender]
                del self._workers[sender]

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._queues)
