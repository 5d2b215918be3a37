from __future__ import annotations

from prewarm.core import errors
from prewarm.core.errors import BootFailure, FrameworkError, MissingEntryPoint, PrewarmError, UnknownCommandError


def test_missing_entry_point_is_a_boot_failure_with_entry_details() -> None:
    e = MissingEntryPoint("app.py", root="/srv/app")
    assert isinstance(e, BootFailure) and isinstance(e, FrameworkError)
    assert e.code == "MISSING_ENTRY_POINT"
    assert e.message == "unable to find your app.py"
    assert e.details == {"entry": "app.py", "root": "/srv/app"}
    assert str(e) == "MISSING_ENTRY_POINT: unable to find your app.py"


def test_boot_failure_keeps_traceback_text_verbatim() -> None:
    tb = "Traceback (most recent call last):\n  ...\nValueError: boom\n"
    e = BootFailure(tb)
    assert e.code == "BOOT_FAILURE"
    assert e.message == tb
    assert e.details == {}


def test_unknown_command_error() -> None:
    e = UnknownCommandError("deploy")
    assert e.code == "UNKNOWN_COMMAND"
    assert e.details == {"command": "deploy"}
    assert "deploy" in str(e)


def test_every_error_type_derives_from_prewarm_error() -> None:
    exported = [
        obj
        for name, obj in vars(errors).items()
        if isinstance(obj, type) and issubclass(obj, Exception) and obj.__module__ == errors.__name__
    ]
    assert exported
    assert all(issubclass(cls, PrewarmError) for cls in exported)
