import json

from lockdown.privilege import LOCK_REASON, PrivilegeGate
from lockdown.schema import GrantOutcome, PrivilegeStatus
from lockdown.settings import settings


def test_grant_and_revoke(tmp_path):
    asked = []
    gate = PrivilegeGate(prompt=lambda reason: asked.append(reason) or True)

    assert gate.is_granted() == PrivilegeStatus.NOT_GRANTED
    assert gate.request_grant(LOCK_REASON) == GrantOutcome.GRANTED
    assert asked == [LOCK_REASON]
    assert settings.grant_file.exists()
    assert gate.is_granted() == PrivilegeStatus.GRANTED

    assert gate.revoke() is True
    assert gate.is_granted() == PrivilegeStatus.NOT_GRANTED
    assert gate.revoke() is False


def test_denied_and_cancelled(tmp_path):
    denied = PrivilegeGate(grant_file=tmp_path / "g.json", prompt=lambda reason: False)
    assert denied.request_grant(LOCK_REASON) == GrantOutcome.DENIED

    def interrupted(reason):
        raise KeyboardInterrupt

    cancelled = PrivilegeGate(grant_file=tmp_path / "g.json", prompt=interrupted)
    assert cancelled.request_grant(LOCK_REASON) == GrantOutcome.CANCELLED
    assert not (tmp_path / "g.json").exists()


def test_status_is_read_fresh_every_time(tmp_path):
    path = tmp_path / "g.json"
    gate = PrivilegeGate(grant_file=path, prompt=lambda reason: True)
    gate.request_grant(LOCK_REASON)
    assert gate.is_granted() == PrivilegeStatus.GRANTED

    # Removed behind the gate's back
    path.unlink()
    assert gate.is_granted() == PrivilegeStatus.NOT_GRANTED


def test_grant_for_another_user_does_not_count(tmp_path):
    path = tmp_path / "g.json"
    gate = PrivilegeGate(grant_file=path, prompt=lambda reason: True)
    gate.request_grant(LOCK_REASON)

    data = json.loads(path.read_text())
    data["uid"] += 1
    path.write_text(json.dumps(data))

    assert gate.is_granted() == PrivilegeStatus.NOT_GRANTED


def test_garbage_grant_file_is_not_granted(tmp_path):
    path = tmp_path / "g.json"
    path.write_text("garbage")
    assert PrivilegeGate(grant_file=path).is_granted() == PrivilegeStatus.NOT_GRANTED
