import pytest

import rsgen


def test_structural_generics_render_recursively() -> None:
    inner = rsgen.Type("Vec").generic("u8")
    ty = rsgen.Type("HashMap").generic("String").generic(inner)

    assert str(ty) == "HashMap<String, Vec<u8>>"


def test_type_without_generics_renders_bare_name() -> None:
    assert str(rsgen.Type("u8")) == "u8"


def test_parse_splits_single_generic_argument() -> None:
    assert rsgen.Type.parse("Vec<u8>") == rsgen.Type("Vec", [rsgen.Type("u8")])


def test_parse_keeps_multi_argument_list_as_one_synthetic_generic() -> None:
    ty = rsgen.Type.parse("HashMap<K, V>")

    assert ty.name == "HashMap"
    assert ty.generics == [rsgen.Type("K, V")]
    assert str(ty) == "HashMap<K, V>"


def test_parse_splits_at_first_delimiter_and_keeps_nested_text() -> None:
    ty = rsgen.Type.parse("Option<Vec<u8>>")

    assert ty.name == "Option"
    assert ty.generics == [rsgen.Type("Vec<u8>")]
    assert str(ty) == "Option<Vec<u8>>"


@pytest.mark.parametrize(
    "text",
    ["u8", "&'a str", "fn(u8) -> u8", "<T as Iterator>::Item"],
)
def test_parse_keeps_text_without_trailing_generic_list_verbatim(text: str) -> None:
    ty = rsgen.Type.parse(text)

    assert ty.name == text
    assert ty.generics == []


@pytest.mark.parametrize("text", ["Vec<u8", "Vec<u8>>", "Foo>"])
def test_parse_rejects_unbalanced_delimiters(text: str) -> None:
    with pytest.raises(rsgen.UsageError) as exc_info:
        rsgen.Type.parse(text)

    assert exc_info.value.code == "MALFORMED_GENERIC"


def test_generic_rejects_name_already_containing_generics() -> None:
    with pytest.raises(rsgen.UsageError) as exc_info:
        rsgen.Type("Vec<u8>").generic("u16")

    assert exc_info.value.code == "GENERIC_IN_NAME"


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Foo", "Foo"),
        ("std::io::Result", "Result"),
        ("crate::a::B", "B"),
    ],
)
def test_key_for_sorting_drops_path_prefix(name: str, expected: str) -> None:
    assert rsgen.Type(name).key_for_sorting() == expected


def test_key_for_sorting_ignores_generics() -> None:
    assert rsgen.Type("Vec").generic("Foo").key_for_sorting() == "Vec"


def test_path_qualifies_name_and_copies_generics() -> None:
    base = rsgen.Type("Bar").generic("T")

    qualified = base.path("foo")

    assert str(qualified) == "foo::Bar<T>"
    assert qualified.generics is not base.generics
    assert str(base) == "Bar<T>"


def test_path_rejects_already_qualified_name() -> None:
    with pytest.raises(rsgen.UsageError) as exc_info:
        rsgen.Type("a::B").path("x")

    assert exc_info.value.code == "NESTED_PATH"


def test_as_type_copies_types_and_parses_strings() -> None:
    ty = rsgen.Type("Foo").generic("T")
    owned = rsgen.as_type(ty)

    assert owned == ty
    assert owned is not ty
    assert owned.generics[0] is not ty.generics[0]
    assert rsgen.as_type("Box<dyn Error>") == rsgen.Type("Box", [rsgen.Type("dyn Error")])


def test_usage_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        rsgen.UsageError("NOT_A_CODE", "message")
