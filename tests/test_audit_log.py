from datetime import datetime

from audit_log import KIND_MESSAGE, KIND_REGISTRATION, AuditLog


class StepClock:
    def __init__(self, *moments):
        self.moments = list(moments)

    def __call__(self):
        return self.moments.pop(0)


def test_append_and_read(tmp_path):
    log = AuditLog(str(tmp_path / "data" / "logs.json"), clock=lambda: datetime(2025, 3, 20, 9, 30))

    entry = log.append(KIND_MESSAGE, "50499990001", "Mensaje procesado: hola")

    assert entry == {
        "kind": "mensaje",
        "timestamp": "2025-03-20T09:30:00",
        "userId": "50499990001",
        "detail": "Mensaje procesado: hola",
    }
    assert log.entries() == [entry]


def test_history_matches_substring_in_order(tmp_path):
    clock = StepClock(datetime(2025, 3, 2), datetime(2025, 3, 1), datetime(2025, 3, 3))
    log = AuditLog(str(tmp_path / "logs.json"), clock=clock)
    log.append(KIND_MESSAGE, "50499990001", "b")
    log.append(KIND_REGISTRATION, "50499990001", "a")
    log.append(KIND_MESSAGE, "50488880000", "other")

    history = log.history_for("99990001")

    assert [e["detail"] for e in history] == ["a", "b"]


def test_write_failure_is_not_raised(tmp_path):
    target = tmp_path / "logs.json"
    target.mkdir()
    log = AuditLog(str(target))
    assert log.append(KIND_MESSAGE, "504", "x") is None
    assert log.entries() == []
