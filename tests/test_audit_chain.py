import json

from huginn_core.obs.audit import verify_chain, write_task_audit


def test_audit_hash_chain_links_records(isolated_dirs):
    p1 = write_task_audit("t1", "command", True, 12)
    p2 = write_task_audit("t2", "script", False, 40, error_code="timeout", exit_code=None)
    assert p1 == p2
    assert p1.startswith(str(isolated_dirs / "logs" / "audit"))
    with open(p1, "r", encoding="utf-8") as f:
        lines = [l.strip() for l in f if l.strip()]
    first = json.loads(lines[-2])
    second = json.loads(lines[-1])
    assert first["prev_hash"] is None
    assert second["prev_hash"] == first["hash"]
    assert second["error_code"] == "timeout"
    assert verify_chain(p1)


def test_tampering_breaks_chain(isolated_dirs):
    path = write_task_audit("t1", "command", True, 1)
    write_task_audit("t2", "command", True, 2)
    with open(path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    rec = json.loads(lines[0])
    rec["ok"] = False
    lines[0] = json.dumps(rec) + "\n"
    with open(path, "w", encoding="utf-8") as f:
        f.writelines(lines)
    assert not verify_chain(path)
