import json

from polyexec.execution.classifier import Outcome
from polyexec.utils.logging import get_logger, log_json


def test_log_json(capsys):
    logger = get_logger("test")
    log_json(logger, "event_name", foo="bar", outcome=Outcome.ACCEPTED, raw=b"\x01")
    out = capsys.readouterr().err.strip()
    data = json.loads(out)
    assert data["event"] == "event_name"
    assert data["foo"] == "bar"
    assert data["outcome"] == "accepted"
    assert data["raw"] == "0x01"
