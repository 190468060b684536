import json

from guardians import AdminList, GuardianRegistry


def test_link_round_trip(registry):
    assert registry.link("504111", "0801201000001")
    assert registry.link("504111", "0801201000002")
    assert registry.students_of("504111") == ["0801201000001", "0801201000002"]

    assert registry.unlink("504111", "0801201000001")
    assert registry.students_of("504111") == ["0801201000002"]


def test_link_is_idempotent(registry):
    registry.link("504111", "0801201000001")
    registry.link("504111", "0801201000001")
    assert registry.students_of("504111") == ["0801201000001"]


def test_same_student_for_two_guardians(registry):
    registry.link("504111", "0801201000001")
    registry.link("504222", "0801201000001")
    assert registry.guardians() == ["504111", "504222"]


def test_unlink_unknown_pair(registry):
    assert not registry.unlink("504111", "0801201000001")
    registry.link("504111", "0801201000001")
    assert not registry.unlink("504111", "0801201000002")


def test_file_layout(registry):
    registry.link("504111", "0801201000001")
    with open(registry.path, encoding="utf-8") as fh:
        assert json.load(fh) == {"encargados": {"504111": {"alumnos": ["0801201000001"]}}}


def test_keeps_extra_fields(tmp_path):
    path = tmp_path / "encargados.json"
    path.write_text(json.dumps({"encargados": {"504111": {"nombre": "Marta", "alumnos": []}}}))
    registry = GuardianRegistry(str(path))

    registry.link("504111", "0801201000001")

    assert registry.records()["504111"] == {"nombre": "Marta", "alumnos": ["0801201000001"]}


def test_unreadable_file_reads_empty(tmp_path):
    path = tmp_path / "encargados.json"
    path.write_text("{ not json")
    registry = GuardianRegistry(str(path))
    assert registry.students_of("504111") == []
    assert registry.guardians() == []


def test_missing_file_reads_empty(tmp_path):
    assert GuardianRegistry(str(tmp_path / "nope.json")).records() == {}


def test_write_failure_reports_false(tmp_path):
    # the target path is a directory, so the rename cannot succeed
    target = tmp_path / "encargados.json"
    target.mkdir()
    assert not GuardianRegistry(str(target)).link("504111", "0801201000001")


def test_admin_identities_are_normalized(tmp_path):
    path = tmp_path / "admins.json"
    path.write_text(json.dumps(["50499990001@s.whatsapp.net"]))
    admins = AdminList.load(str(path), extra={"50499990002"})

    assert admins.is_admin("50499990001")
    assert admins.is_admin("+50499990002")
    assert not admins.is_admin("50499990003")
    assert not admins.is_admin("")
    assert len(admins) == 2


def test_admin_file_missing(tmp_path):
    admins = AdminList.load(str(tmp_path / "admins.json"), extra=())
    assert len(admins) == 0
