import io
import threading

import pytest

from efivarkit import errors
from efivarkit.errors import (
    EfiError,
    ErrorEntry,
    error_clear,
    error_entries,
    error_get,
    error_pop,
    error_set,
    get_loglevel,
    get_verbose,
    set_loglevel,
    set_verbose,
)


@pytest.fixture(autouse=True)
def _reset():
    error_clear()
    old_verbose = get_verbose()
    old_level = get_loglevel()
    yield
    error_clear()
    set_verbose(old_verbose)
    set_loglevel(old_level)


def test_error_set_returns_depth():
    assert error_set("a.c", "f", 10, 22, "first") == 1
    assert error_set("b.c", "g", 20, 0, "second") == 2


def test_error_get_returns_fields():
    error_set("file.c", "func", 42, 5, "msg")
    entry = error_get(0)
    assert entry == ErrorEntry("file.c", "func", 42, "msg", 5)


def test_error_get_past_end_is_none():
    error_set("file.c", "func", 1, 0, "x")
    assert error_get(1) is None
    assert error_get(-1) is None


def test_message_may_be_absent():
    error_set("file.c", "func", 1, 0, None)
    assert error_get(0).message is None


def test_error_set_requires_names():
    with pytest.raises(ValueError):
        error_set(None, "f", 1, 0, "m")


def test_pop_removes_latest():
    error_set("a.c", "f", 1, 0, "one")
    error_set("a.c", "f", 2, 0, "two")
    error_pop()
    assert [e.message for e in error_entries()] == ["one"]


def test_pop_on_empty_is_harmless():
    error_pop()
    assert error_entries() == ()


def test_clear_empties_trace():
    error_set("a.c", "f", 1, 0, "one")
    error_clear()
    assert error_entries() == ()
    assert error_get(0) is None


def test_trace_is_per_thread():
    error_set("a.c", "f", 1, 0, "main")
    seen = []
    thread = threading.Thread(target=lambda: seen.append(error_entries()))
    thread.start()
    thread.join()
    assert seen == [()]
    assert len(error_entries()) == 1


def test_record_names_caller():
    errors._record("trouble", 2)
    entry = error_get(0)
    assert entry.function == "test_record_names_caller"
    assert entry.error == 2
    assert entry.message == "trouble"


def test_verbose_round_trip():
    set_verbose(3)
    assert get_verbose() == 3


def test_loglevel_round_trip():
    set_loglevel(2)
    assert get_loglevel() == 2


def test_debug_written_when_verbose_enough():
    log = io.StringIO()
    set_verbose(1, log)
    set_loglevel(1)
    errors._debug("hello")
    assert log.getvalue() == "hello\n"


def test_debug_suppressed_below_level():
    log = io.StringIO()
    set_verbose(0, log)
    set_loglevel(1)
    errors._debug("hidden")
    assert log.getvalue() == ""


def test_set_verbose_keeps_log_when_none_given():
    log = io.StringIO()
    set_verbose(1, log)
    set_verbose(2)
    set_loglevel(0)
    errors._debug("kept")
    assert "kept" in log.getvalue()


def test_efi_error_carries_errno():
    exc = EfiError(22, "bad")
    assert exc.errno == 22
    assert exc.strerror == "bad"
    assert isinstance(exc, OSError)