import pytest

from faultinject.stubgen import StubSource, render_stub


def _plan(body: str) -> str:
    return f"<plan>{body}</plan>"


def test_header_carries_enabled_flag():
    stub = render_stub(_plan(""), default_enabled=0)
    assert stub.source.startswith('#include "inter.h"\n#include <sys/types.h>\nSTUB_VAR_DECL\n\n')
    assert "u_int8_t g_libfi_enabled = 0;\n" in stub.source


def test_empty_plan_has_empty_examine_tables_and_no_symbols():
    stub = render_stub(_plan(""))
    assert "char **examine_args_string[] = {};\n" in stub.source
    assert 'extern "C" {\n}\n' in stub.source
    assert stub.symbols == ()
    assert stub.symbols_text == ""


def test_examineargs_path_is_included():
    stub = render_stub(_plan(""), examineargs_path="examine.cpp")
    assert stub.source.endswith('#include "examine.cpp"\n')
    assert "examine_args_string" not in stub.source


def test_trigger_with_args():
    body = (
        '<trigger id="t1" class="CallStackTrigger">'
        "<args><frame><module>m</module></frame></args></trigger>"
    )
    stub = render_stub(_plan(body))
    expected = (
        'struct TriggerDesc trigger_t1 = { "t1", "CallStackTrigger", NULL, '
        '"<args><frame><module>m</module></frame></args>" };\n'
    )
    assert expected in stub.source


def test_trigger_without_args_and_incomplete_trigger():
    body = '<trigger id="t2" class="Always"/><trigger id="lonely"/>'
    stub = render_stub(_plan(body))
    assert 'struct TriggerDesc trigger_t2 = { "t2", "Always", NULL, "" };\n' in stub.source
    assert "trigger_lonely" not in stub.source


def test_trigger_args_attributes_and_line_breaks_are_escaped():
    body = '<trigger id="t" class="C"><args><x a="1" b="2">p\nq</x></args></trigger>'
    source = render_stub(_plan(body)).source
    assert '<x a=\\"1\\"  b=\\"2\\">' in source
    assert "p\\\nq" in source


def test_function_entry_defaults_and_trigger_list():
    body = (
        '<function name="open" retval="-1">'
        '<triggerx ref="a"/><triggerx ref="b"/></function>'
    )
    source = render_stub(_plan(body)).source
    assert "TriggerDesc* triggerList_1[] = { &trigger_a, &trigger_b, NULL };\n" in source
    assert "struct fninfov2 function_info_open[] = {\n" in source
    assert '\t{ "open", -1, 0, 0, 0, triggerList_1 },\n' in source
    assert '\t{ "", 0, 0, 0, 0, NULL }\n};\n' in source


def test_same_function_twice_shares_one_table_and_one_stub():
    body = (
        '<function name="read" retval="-1" errno="EIO" calloriginal="1" argc="3"/>'
        '<function name="read" retval="0"/>'
    )
    stub = render_stub(_plan(body))
    source = stub.source
    assert source.count("struct fninfov2 function_info_read[]") == 1
    assert '\t{ "read", -1, EIO, 1, 3, triggerList_1 },\n' in source
    assert '\t{ "read", 0, 0, 0, 0, triggerList_2 },\n' in source
    assert source.count("GENERATE_STUBv2(read)") == 1
    assert stub.symbols == ("_read",)


def test_function_without_retval_still_uses_a_list_id():
    body = '<function name="a"/><function name="b" retval="1"/>'
    source = render_stub(_plan(body)).source
    assert '{ "a",' not in source
    assert '\t{ "b", 1, 0, 0, 0, triggerList_2 },\n' in source


def test_alias_sets_symbol():
    stub = render_stub(_plan('<function name="open" alias="open64" retval="-1"/>'))
    assert "GENERATE_STUB_x64(open, open64)\n" in stub.source
    assert "GENERATE_STUBv2(open)\n" in stub.source
    assert stub.symbols == ("_open64",)
    assert stub.symbols_text == "_open64\n"


def test_stub_order_follows_plan():
    body = '<function name="z" retval="0"/><function name="a" retval="0"/>'
    stub = render_stub(_plan(body))
    assert stub.symbols == ("_z", "_a")
    assert stub.source.index("GENERATE_STUBv2(z)") < stub.source.index("GENERATE_STUBv2(a)")


def test_invalid_xml_raises():
    with pytest.raises(ValueError):
        render_stub("<plan><function></plan>")


def test_stub_source_symbols_text_round_trip():
    stub = StubSource("x", ("_a", "_b"))
    assert stub.symbols_text.splitlines() == ["_a", "_b"]