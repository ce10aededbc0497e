import xml.etree.ElementTree as ET

import pytest

from faultinject.injection import (
    Action,
    FunctionInfo,
    InjectionLog,
    TriggerDesc,
    determine_action,
)
from faultinject.triggers import Trigger, register_trigger


class _Always(Trigger):
    def eval(self, function_name, *args):
        return True


class _Never(Trigger):
    def eval(self, function_name, *args):
        return False


class _Recorder(Trigger):
    instances = []

    def __init__(self):
        self.calls = []
        self.init_data = "unset"
        _Recorder.instances.append(self)

    def init(self, init_data):
        self.init_data = init_data

    def eval(self, function_name, *args):
        self.calls.append((function_name, args))
        return True


register_trigger("InjTestAlways", _Always)
register_trigger("InjTestNever", _Never)
register_trigger("InjTestRecorder", _Recorder)


def _entry(name="read", retval=-1, errno=5, call_original=0, argc=0, triggers=()):
    return FunctionInfo(name, retval, errno, call_original, argc, list(triggers))


def test_no_entries_calls_original():
    assert determine_action([], "read") == Action(True, False, 0, 0)


def test_entry_without_triggers_injects():
    action = determine_action([_entry(retval=-1, errno=5)], "read")
    assert action == Action(call_original=False, return_error=True, return_code=-1, return_errno=5)


def test_false_trigger_blocks_injection():
    entry = _entry(triggers=[TriggerDesc("t1", "InjTestAlways"), TriggerDesc("t2", "InjTestNever")])
    assert determine_action([entry], "read") == Action()


def test_all_true_triggers_inject():
    entry = _entry(retval=-1, triggers=[TriggerDesc("a", "InjTestAlways"), TriggerDesc("b", "InjTestAlways")])
    action = determine_action([entry], "read")
    assert action.return_error is True
    assert action.return_code == -1


def test_unknown_trigger_class_gives_default():
    entry = _entry(triggers=[TriggerDesc("x", "NoSuchTriggerClass")])
    assert determine_action([entry], "read") == Action()
    assert entry.triggers[0].trigger is None


def test_injected_values_come_from_first_entry():
    first = _entry(retval=-1, errno=5, triggers=[TriggerDesc("n", "InjTestNever")])
    second = _entry(retval=-7, errno=9)
    action = determine_action([first, second], "read")
    assert action.return_error is True
    assert (action.return_code, action.return_errno) == (first.return_value, first.errno_value)


def test_arguments_limited_by_argc():
    desc = TriggerDesc("r", "InjTestRecorder")
    determine_action([_entry(argc=2, triggers=[desc])], "read", 10, 20, 30)
    assert desc.trigger.calls == [("read", (10, 20))]


def test_missing_arguments_are_zero():
    desc = TriggerDesc("r", "InjTestRecorder")
    determine_action([_entry(argc=3, triggers=[desc])], "read", 4)
    assert desc.trigger.calls == [("read", (4, 0, 0))]


@pytest.mark.parametrize("argc", [-1, 0])
def test_no_arguments_for_zero_or_negative_argc(argc):
    desc = TriggerDesc("r", "InjTestRecorder")
    determine_action([_entry(argc=argc, triggers=[desc])], "read", 1, 2)
    assert desc.trigger.calls == [("read", ())]


def test_too_many_arguments_never_injects():
    desc = TriggerDesc("r", "InjTestRecorder")
    action = determine_action([_entry(argc=7, triggers=[desc])], "read", *range(7))
    assert action == Action()
    assert desc.trigger.calls == []


def test_trigger_created_once_and_initialised_from_xml():
    desc = TriggerDesc("r", "InjTestRecorder", init="<args><frame>1</frame></args>")
    entry = _entry(triggers=[desc])
    determine_action([entry], "read")
    created = desc.trigger
    determine_action([entry], "read")
    assert desc.trigger is created
    assert len(created.calls) == 2
    assert created.init_data.tag == "args"
    assert created.init_data.find("frame").text == "1"


def test_empty_init_gives_none():
    desc = TriggerDesc("r", "InjTestRecorder")
    determine_action([_entry(triggers=[desc])], "read")
    assert desc.trigger.init_data is None


def test_log_writes_plan_and_replay_entry(tmp_path):
    log_path = tmp_path / "inject.log"
    replay_path = tmp_path / "replay.xml"
    action = Action(call_original=False, return_error=True, return_code=-1, return_errno=5)
    with InjectionLog(log_path, replay_path) as log:
        log.record("read", action, 3)
    root = ET.fromstring(replay_path.read_text())
    assert root.tag == "plan"
    functions = root.findall("function")
    assert [f.attrib for f in functions] == [
        {"name": "read", "inject": "3", "retval": "-1", "errno": "5", "calloriginal": "0"}
    ]
    assert "Returning code -1; setting errno to 5" in log_path.read_text()


def test_log_ignores_non_injecting_action(tmp_path):
    replay_path = tmp_path / "replay.xml"
    with InjectionLog(tmp_path / "inject.log", replay_path) as log:
        log.record("read", Action(), 1)
    assert replay_path.read_text() == "<plan>\n</plan>\n"
    assert (tmp_path / "inject.log").read_text() == ""


def test_record_after_close_raises(tmp_path):
    log = InjectionLog(tmp_path / "a.log", tmp_path / "r.xml")
    log.close()
    log.close()
    with pytest.raises(ValueError):
        log.record("read", Action(return_error=True), 1)
    assert (tmp_path / "r.xml").read_text().endswith("</plan>\n")