import logging

from partsync_bff.logging_config import KeyValueFormatter, configure_logging


def _record(**extra):
    record = logging.LogRecord("partsync_bff.auth_flow", logging.INFO, __file__, 1, "Token exchange succeeded", (), None)
    record.__dict__.update(extra)
    return record


def test_extra_fields_are_appended_sorted():
    line = KeyValueFormatter("%(levelname)s %(message)s").format(_record(provider="onshape", account="42"))
    assert line == "INFO Token exchange succeeded account=42 provider=onshape"


def test_plain_record_has_no_suffix():
    assert KeyValueFormatter("%(message)s").format(_record()) == "Token exchange succeeded"


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        configure_logging("debug")
        configure_logging("info")
        ours = [h for h in root.handlers if getattr(h, "_partsync", False)]
        assert len(ours) == 1
        assert root.level == logging.INFO
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
