import pytest

from ucibus import codec
from ucibus.errors import ParseError
from ucibus.models import Section


def test_parse_named_section_with_quoted_values():
    sections = codec.parse("config interface 'lan'\n\toption proto 'static'\n\toption ipaddr '192.168.1.1'\n")
    assert len(sections) == 1
    s = sections[0]
    assert s.section_type == "interface"
    assert s.section_name == "lan"
    assert s.values == {"proto": "static", "ipaddr": "192.168.1.1"}
    assert s.line_number == 1


def test_serialize_then_parse_keeps_values():
    original = codec.parse(
        "config interface 'lan'\n"
        "\toption proto 'static'\n"
        "\toption ipaddr '192.168.1.1'\n"
        "\toption mtu 1500\n"
        "\toption auto true\n"
        "\toption label 'it\\'s mine'\n"
        "\tlist dns 1.1.1.1\n"
        "\tlist dns '8.8.8.8'\n"
    )
    again = codec.parse(codec.serialize(original))
    assert again[0].values == original[0].values
    assert again[0].section_name == "lan"


def test_value_coercion_rules():
    assert codec.parse_value("42") == 42
    assert codec.parse_value("'42'") == "42"
    assert codec.parse_value("true") is True
    assert codec.parse_value("false") is False
    assert codec.parse_value('"true"') == "true"
    assert codec.parse_value("1") == 1 and not isinstance(codec.parse_value("1"), bool)
    assert codec.parse_value("static") == "static"
    assert codec.parse_value("-5") == -5
    assert codec.parse_value("5-") == "5-"


def test_serialize_value_quotes_ambiguous_strings():
    assert codec.serialize_value("static") == "static"
    assert codec.serialize_value("42") == "'42'"
    assert codec.serialize_value("true") == "'true'"
    assert codec.serialize_value("") == "''"
    assert codec.serialize_value("a b") == "'a b'"
    assert codec.serialize_value(True) == "1"
    assert codec.serialize_value(False) == "0"
    assert codec.serialize_value(7) == "7"


ROUND_TRIP_VALUES = [
    "static",
    "",
    " ",
    " padded ",
    "two words",
    "tab\tinside",
    "it's",
    'say "hi"',
    "'\"",
    "back\\slash",
    "trailing\\",
    "\\'",
    "42",
    "-7",
    "007",
    "true",
    "false",
    "True",
    "#not-a-comment",
    "option",
    "caf\u00e9",
    0,
    1,
    1500,
    -3,
    True,
    False,
    ["1.1.1.1", "8.8.8.8"],
    ["", "a b", "it's", "42", "true"],
    [1, "1", True, -2],
    ["single"],
]


@pytest.mark.parametrize("value", ROUND_TRIP_VALUES)
def test_round_trip_preserves_value(value):
    section = Section(section_type="interface", section_name="lan", values={"v": value, "after": "x"})
    parsed = codec.parse(codec.serialize([section]))
    assert len(parsed) == 1
    assert parsed[0].values == section.values
    assert parsed[0].section_name == "lan"


def test_round_trip_many_sections_keeps_order_and_names():
    sections = [
        Section(section_type="interface", section_name="lan", values={"proto": "static"}, uuid="u1"),
        Section(section_type="defaults", values={"syn_flood": True}),
        Section(section_type="rule", section_name="it's", values={"name": "x y", "dest": ["a", "b"]}),
        Section(section_type="empty", section_name="e"),
    ]
    parsed = codec.parse(codec.serialize(sections))
    assert [(s.section_type, s.section_name, s.uuid) for s in parsed] == [
        (s.section_type, s.section_name, s.uuid) for s in sections
    ]
    assert [s.values for s in parsed] == [s.values for s in sections]


@pytest.mark.parametrize("text", ["a\nb", "a\r\nb", "a\rb", "a\x0cb", "a\u2028b"])
def test_line_breaks_cannot_be_serialized(text):
    with pytest.raises(ValueError):
        codec.serialize_value(text)
    with pytest.raises(ValueError):
        codec.serialize([Section(section_type="x", values={"banner": text})])


def test_empty_list_cannot_be_serialized():
    with pytest.raises(ValueError):
        codec.serialize([Section(section_type="x", values={"dns": []})])


def test_booleans_come_back_as_equal_ints():
    section = Section(section_type="defaults", values={"enabled": True, "off": False})
    parsed = codec.parse(codec.serialize([section]))[0]
    assert parsed.values == {"enabled": 1, "off": 0}
    assert parsed.values == section.values


def test_uuid_option_is_identity_not_value():
    sections = codec.parse("config interface 'lan'\n\toption uuid 'abc-123'\n\toption proto dhcp\n")
    assert sections[0].uuid == "abc-123"
    assert "uuid" not in sections[0].values


def test_serialize_writes_uuid_first():
    section = Section(section_type="interface", section_name="lan", values={"proto": "dhcp"}, uuid="abc-123")
    text = codec.serialize([section])
    assert text == "config interface 'lan'\n\toption uuid abc-123\n\toption proto dhcp\n\n"


def test_anonymous_section_and_name_equal_to_type():
    sections = codec.parse("config defaults\n\toption syn_flood 1\n")
    assert sections[0].section_name is None
    header = codec.serialize([Section(section_type="defaults", section_name="defaults")]).splitlines()[0]
    assert header == "config defaults"


def test_list_promotes_existing_option():
    sections = codec.parse("config x 'y'\n\toption dns a\n\tlist dns b\n")
    assert sections[0].values["dns"] == ["a", "b"]


def test_comments_blank_lines_and_package_are_skipped():
    content = "# header\npackage network\n\nconfig interface 'lan'\n  # inline\n\toption proto dhcp\n"
    sections = codec.parse(content)
    assert len(sections) == 1
    assert sections[0].line_number == 4


def test_empty_input_has_no_sections():
    assert codec.parse("") == []
    assert codec.serialize([]) == ""


@pytest.mark.parametrize(
    "content, line_number",
    [
        ("option proto dhcp\n", 1),
        ("config interface 'lan'\n\tbogus line\n", 2),
        ("config\n", 1),
        ("config x 'y'\n\tlist uuid abc\n", 2),
        ("config x 'y'\n\toption\n", 2),
    ],
)
def test_malformed_lines_raise_with_line_number(content, line_number):
    with pytest.raises(ParseError) as exc_info:
        codec.parse(content)
    assert exc_info.value.line_number == line_number
    assert f"line {line_number}" in str(exc_info.value)


def test_validate_reports_instead_of_raising():
    ok = codec.validate("config a 'b'\n\toption c d\n")
    assert ok.valid and ok.sections == 1 and ok.errors == []

    bad = codec.validate("config a 'b'\nnonsense\n")
    assert not bad.valid
    assert bad.sections == 0
    assert "line 2" in bad.errors[0]
