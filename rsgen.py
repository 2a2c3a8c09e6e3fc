"""Rust source code builder.

Builds an in-memory model of Rust declarations (structs, enums, traits,
impl blocks, type aliases, functions, modules, `use` imports) and renders it
to deterministic, indentation-correct source text.

Usage:
    scope = rsgen.Scope()
    scope.import_("std::collections", "HashMap")
    scope.new_struct("Point").field("x", "f64").field("y", "f64")
    print(scope.to_string())
"""

import copy
import enum
import io
import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

DEFAULT_INDENT_WIDTH = 4

_T = TypeVar("_T")


# ===--- Config contracts ---=== #


@dataclass(frozen=True)
class FormatConfig:
    """Settings fixed for the lifetime of one Formatter.

    Attributes:
        indent_width: Spaces emitted per indentation level.
        trim_trailing_newline: When True, Scope.to_string() drops one
            trailing newline from the rendered text.
    """

    indent_width: int = DEFAULT_INDENT_WIDTH
    trim_trailing_newline: bool = True

    def __post_init__(self) -> None:
        if self.indent_width < 1:
            raise ValueError(
                f"indent_width must be a positive integer, got {self.indent_width}"
            )


VALID_ERROR_CODES = {
    "MIXED_FIELDS",
    "GENERIC_IN_NAME",
    "MALFORMED_GENERIC",
    "NESTED_PATH",
    "DUPLICATE_MODULE",
    "MISSING_FN_BODY",
    "TRAIT_FN_VISIBILITY",
    "EMPTY_FIELDS",
}


class UsageError(Exception):
    """Raised when the builder API is used in a way that cannot produce valid output."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown usage error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class RenderError(Exception):
    """Raised when the output sink rejects a write during rendering."""


# ===--- Formatter ---=== #


class Formatter:
    """Indentation-tracking text writer over a caller-supplied sink.

    The sink is any object with a ``write(str)`` method (io.StringIO, an open
    text file, ...). Indentation is a single integer level; every non-empty
    line that starts while the level is N is prefixed with
    ``N * config.indent_width`` spaces. Blank lines are never padded.
    """

    def __init__(self, sink, config: FormatConfig | None = None):
        self._sink = sink
        self._config = config or FormatConfig()
        self._level = 0
        self._start_of_line = True

    @property
    def config(self) -> FormatConfig:
        return self._config

    @property
    def indent_level(self) -> int:
        return self._level

    def is_start_of_line(self) -> bool:
        return self._start_of_line

    def write(self, text: str) -> None:
        """Append text to the sink, indenting each line that begins a new line.

        Raises:
            OSError: Propagated directly from the sink.
        """
        if not text:
            return
        should_indent = self._start_of_line
        for i, line in enumerate(text.split("\n")):
            if i:
                self._sink.write("\n")
                should_indent = True
            if not line:
                continue
            if should_indent and self._level:
                self._sink.write(" " * (self._level * self._config.indent_width))
            self._sink.write(line)
        self._start_of_line = text.endswith("\n")

    @contextmanager
    def indent(self) -> Iterator["Formatter"]:
        """Render the enclosed writes one level deeper.

        The level is restored on every exit path, including exceptions.
        """
        self._level += 1
        try:
            yield self
        finally:
            self._level -= 1

    def block(self, body: Callable[["Formatter"], _T], suffix: str = "") -> _T:
        """Emit ``{``, run body one level deeper, then emit ``}`` plus suffix.

        A single space separates the brace from preceding text on the same
        line. The indentation level after return (or raise) equals the level
        before the call.

        Args:
            body: Callable receiving this formatter; its writes are indented.
            suffix: Text placed right after the closing brace, e.g. ",".

        Returns:
            Whatever body returned.

        Raises:
            Any exception raised by body, after the level is restored.
        """
        if not self._start_of_line:
            self.write(" ")
        self.write("{\n")
        with self.indent():
            result = body(self)
        self.write("}" + suffix + "\n")
        return result


def fmt_generics(generics: list[str], fmt: Formatter) -> None:
    if generics:
        fmt.write("<" + ", ".join(generics) + ">")


def fmt_bound_rhs(tys: list["Type"], fmt: Formatter) -> None:
    for i, ty in enumerate(tys):
        if i:
            fmt.write(" + ")
        ty.render(fmt)


def fmt_bounds(bounds: list["Bound"], fmt: Formatter) -> None:
    """Emit a `where` clause, one bound per line, continuation lines aligned."""
    if not bounds:
        return
    fmt.write("\n")
    for i, bound in enumerate(bounds):
        fmt.write(f"where {bound.name}: " if i == 0 else f"      {bound.name}: ")
        fmt_bound_rhs(bound.bound, fmt)
        fmt.write(",\n")


def _render_to_string(render: Callable[[Formatter], object]) -> str:
    buf = io.StringIO()
    render(Formatter(buf))
    return buf.getvalue()


# ===--- Type references ---=== #

_GENERIC_RE = re.compile(r"^(.+?)<(.+)>$")


def _delimiters_balanced(text: str) -> bool:
    stripped = text.replace("->", "")
    return stripped.count("<") == stripped.count(">")


@dataclass
class Type:
    """A named type with structurally nested generic arguments."""

    name: str
    generics: list["Type"] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "Type":
        """Build a Type from text such as ``Vec<u8>``.

        The text is split once at the first ``<``: everything between it and
        the final ``>`` becomes ONE generic argument, kept verbatim. This is
        lossy for multi-argument lists: ``HashMap<K, V>`` yields ``HashMap``
        with a single argument named ``K, V``. The rendered text is the same
        as the input either way.

        Text containing ``<`` that does not end in ``>`` but has balanced
        delimiters (``<T as Trait>::Output``) is kept whole as the name.

        Raises:
            UsageError: MALFORMED_GENERIC when ``<``/``>`` are unbalanced.
        """
        if not _delimiters_balanced(text):
            raise UsageError(
                "MALFORMED_GENERIC",
                f"Unbalanced generic delimiters in type: {text!r}",
                "Close every '<' with a matching '>'.",
            )
        match = _GENERIC_RE.match(text)
        if match is None:
            return cls(text)
        return cls(match.group(1), [cls(match.group(2))])

    def generic(self, ty: "Type | str") -> "Type":
        if "<" in self.name:
            raise UsageError(
                "GENERIC_IN_NAME",
                f"Type name already includes generics: {self.name!r}",
                "Build the base type without '<...>' and add generics structurally.",
            )
        self.generics.append(as_type(ty))
        return self

    def path(self, prefix: str) -> "Type":
        """Return a copy of this type qualified as ``prefix::name``."""
        if "::" in self.name:
            raise UsageError(
                "NESTED_PATH",
                f"Type name is already path-qualified: {self.name!r}",
            )
        return Type(f"{prefix}::{self.name}", copy.deepcopy(self.generics))

    def key_for_sorting(self) -> str:
        return self.name.rsplit("::", 1)[-1]

    def render(self, fmt: Formatter) -> None:
        fmt.write(self.name)
        if self.generics:
            fmt.write("<")
            for i, ty in enumerate(self.generics):
                if i:
                    fmt.write(", ")
                ty.render(fmt)
            fmt.write(">")

    def __str__(self) -> str:
        return _render_to_string(self.render)


def as_type(value: "Type | str") -> Type:
    """Coerce to an owned Type; a passed-in Type is copied, never shared."""
    if isinstance(value, Type):
        return copy.deepcopy(value)
    return Type.parse(str(value))


# ===--- Leaf builders ---=== #


class Docs:
    def __init__(self, docs: str):
        self.docs = docs

    def append(self, other: str) -> "Docs":
        self.docs = "\n".join(part for part in (self.docs, other) if part)
        return self

    def render(self, fmt: Formatter) -> None:
        for line in self.docs.splitlines():
            fmt.write(f"/// {line}\n" if line else "///\n")


class Bound:
    def __init__(self, name: str, bound: list[Type]):
        self.name = name
        self.bound = bound


class Field:
    """A named struct field, function argument, or impl associated item."""

    def __init__(
        self,
        name: str,
        ty: "Type | str",
        documentation: str = "",
        annotation: list[str] | None = None,
        value: str = "",
        visibility: str | None = None,
    ):
        self.name = name
        self.ty = as_type(ty)
        self.documentation = documentation
        self.annotation = [] if annotation is None else annotation
        self.value = value
        self.visibility = visibility

    def doc(self, documentation: str) -> "Field":
        self.documentation = documentation
        return self

    def annotate(self, annotation: str) -> "Field":
        self.annotation.append(annotation)
        return self

    def vis(self, visibility: str) -> "Field":
        self.visibility = visibility
        return self


class FieldsKind(enum.Enum):
    EMPTY = "empty"
    NAMED = "named"
    TUPLE = "tuple"


class Fields:
    """Field list of a struct or enum variant: empty, named, or tuple.

    The first push fixes the kind; pushing the other kind afterwards raises
    UsageError(MIXED_FIELDS).
    """

    def __init__(self):
        self.kind = FieldsKind.EMPTY
        self.named_fields: list[Field] = []
        self.tuple_fields: list[tuple[str | None, Type]] = []

    def _require(self, kind: FieldsKind) -> None:
        if self.kind is FieldsKind.EMPTY:
            self.kind = kind
        elif self.kind is not kind:
            raise UsageError(
                "MIXED_FIELDS",
                f"Cannot add a {kind.value} field to a {self.kind.value} field list",
                "Use either named fields or tuple fields on one declaration, not both.",
            )

    def push_named(self, item: Field) -> "Fields":
        self._require(FieldsKind.NAMED)
        self.named_fields.append(item)
        return self

    def named(self, name: str, ty: "Type | str") -> "Fields":
        return self.push_named(Field(name, ty))

    def new_named(self, name: str, ty: "Type | str") -> Field:
        self.named(name, ty)
        return self.named_fields[-1]

    def tuple(self, ty: "Type | str", vis: str | None = None) -> "Fields":
        self._require(FieldsKind.TUPLE)
        self.tuple_fields.append((vis, as_type(ty)))
        return self

    def _render_named(self, fmt: Formatter) -> None:
        for f in self.named_fields:
            if f.documentation:
                Docs(f.documentation).render(fmt)
            for ann in f.annotation:
                fmt.write(f"{ann}\n")
            if f.visibility is not None:
                fmt.write(f"{f.visibility} ")
            fmt.write(f"{f.name}: ")
            f.ty.render(fmt)
            fmt.write(",\n")

    def render(self, fmt: Formatter, suffix: str = "") -> None:
        """Render the fields; suffix follows the closing brace of named fields."""
        if self.kind is FieldsKind.NAMED:
            if not self.named_fields:
                raise UsageError("EMPTY_FIELDS", "Named field list has no fields")
            fmt.block(self._render_named, suffix)
        elif self.kind is FieldsKind.TUPLE:
            if not self.tuple_fields:
                raise UsageError("EMPTY_FIELDS", "Tuple field list has no fields")
            fmt.write("(")
            for i, (vis, ty) in enumerate(self.tuple_fields):
                if i:
                    fmt.write(", ")
                if vis is not None:
                    fmt.write(f"{vis} ")
                ty.render(fmt)
            fmt.write(")")


class Variant:
    def __init__(self, name: str):
        self.name = name
        self.fields = Fields()
        self.attributes: list[str] = []

    def named(self, name: str, ty: "Type | str") -> "Variant":
        self.fields.named(name, ty)
        return self

    def tuple(self, ty: "Type | str") -> "Variant":
        self.fields.tuple(ty)
        return self

    def attr(self, attr: str) -> "Variant":
        self.attributes.append(attr)
        return self

    def render(self, fmt: Formatter) -> None:
        for attr in self.attributes:
            fmt.write(f"#[{attr}]\n")
        fmt.write(self.name)
        if self.fields.kind is FieldsKind.NAMED:
            self.fields.render(fmt, suffix=",")
        else:
            self.fields.render(fmt)
            fmt.write(",\n")


# ===--- Type definitions ---=== #


class TypeDef:
    """Shared head of struct, enum, trait and type alias declarations.

    Head order: docs, allow lints, derive list, repr, attributes, macros,
    cfg_attr, visibility, keyword, name with generics, parents, where bounds.
    """

    def __init__(self, name: str):
        self.ty = Type(name)
        self.vis: str | None = None
        self.docs: Docs | None = None
        self.derive: list[str] = []
        self.allow: list[str] = []
        self.attributes: list[str] = []
        self.repr: str | None = None
        self.bounds: list[Bound] = []
        self.macros: list[str] = []
        self.cfg_attrs: list[str] = []

    def bound(self, name: str, ty: "Type | str") -> None:
        self.bounds.append(Bound(name, [as_type(ty)]))

    def fmt_head(self, keyword: str, parents: list[Type], fmt: Formatter) -> None:
        if self.docs is not None:
            self.docs.render(fmt)
        for allow in self.allow:
            fmt.write(f"#[allow({allow})]\n")
        if self.derive:
            fmt.write(f"#[derive({', '.join(self.derive)})]\n")
        if self.repr is not None:
            fmt.write(f"#[repr({self.repr})]\n")
        for attr in self.attributes:
            fmt.write(f"#[{attr}]\n")
        for m in self.macros:
            fmt.write(f"{m}\n")
        for cfg_attr in self.cfg_attrs:
            fmt.write(f"#[cfg_attr({cfg_attr})]\n")
        if self.vis is not None:
            fmt.write(f"{self.vis} ")
        fmt.write(f"{keyword} ")
        self.ty.render(fmt)
        for i, parent in enumerate(parents):
            fmt.write(": " if i == 0 else " + ")
            parent.render(fmt)
        fmt_bounds(self.bounds, fmt)


class _TypeDefBuilder:
    """Chained head configuration shared by Struct, Enum, Trait and TypeAlias."""

    KIND_RANK = 0

    def __init__(self, name: str):
        self.type_def = TypeDef(name)

    @property
    def ty(self) -> Type:
        return self.type_def.ty

    def sort_key(self) -> tuple[str, int]:
        return (self.type_def.ty.key_for_sorting(), self.KIND_RANK)

    def vis(self, vis: str):
        self.type_def.vis = vis
        return self

    def generic(self, name: "Type | str"):
        self.type_def.ty.generic(name)
        return self

    def bound(self, name: str, ty: "Type | str"):
        self.type_def.bound(name, ty)
        return self

    def doc(self, docs: str):
        self.type_def.docs = Docs(docs)
        return self

    def derive(self, name: str):
        self.type_def.derive.append(name)
        return self

    def allow(self, allow: str):
        self.type_def.allow.append(allow)
        return self

    def repr(self, repr: str):
        self.type_def.repr = repr
        return self

    def attr(self, attr: str):
        self.type_def.attributes.append(attr)
        return self

    def macro(self, macro: str):
        self.type_def.macros.append(macro)
        return self

    def cfg_attr(self, cfg_attr: str):
        self.type_def.cfg_attrs.append(cfg_attr)
        return self


# Secondary sort key for declarations sharing an identifier. Structs come
# first so a type is defined before anything referring to it.
KIND_RANKS = {
    "struct": 0,
    "alias": 1,
    "enum": 2,
    "function": 3,
    "impl": 4,
    "module": 5,
    "trait": 6,
}


class Struct(_TypeDefBuilder):
    KIND_RANK = KIND_RANKS["struct"]

    def __init__(self, name: str):
        super().__init__(name)
        self.fields = Fields()

    def push_field(self, item: Field) -> "Struct":
        self.fields.push_named(item)
        return self

    def field(self, name: str, ty: "Type | str") -> "Struct":
        self.fields.named(name, ty)
        return self

    def new_field(self, name: str, ty: "Type | str") -> Field:
        return self.fields.new_named(name, ty)

    def tuple_field(self, ty: "Type | str", vis: str | None = None) -> "Struct":
        self.fields.tuple(ty, vis)
        return self

    def render(self, fmt: Formatter) -> None:
        self.type_def.fmt_head("struct", [], fmt)
        self.fields.render(fmt)
        if self.fields.kind is not FieldsKind.NAMED:
            fmt.write(";\n")


class Enum(_TypeDefBuilder):
    KIND_RANK = KIND_RANKS["enum"]

    def __init__(self, name: str):
        super().__init__(name)
        self.variants: list[Variant] = []

    def new_variant(self, name: str) -> Variant:
        self.push_variant(Variant(name))
        return self.variants[-1]

    def push_variant(self, item: Variant) -> "Enum":
        self.variants.append(item)
        return self

    def render(self, fmt: Formatter) -> None:
        self.type_def.fmt_head("enum", [], fmt)

        def _variants(fmt: Formatter) -> None:
            for variant in self.variants:
                variant.render(fmt)

        fmt.block(_variants)


class TypeAlias(_TypeDefBuilder):
    """``type Name = Target;``"""

    KIND_RANK = KIND_RANKS["alias"]

    def __init__(self, name: str, target: "Type | str"):
        super().__init__(name)
        self._target = as_type(target)

    def set_ty(self, ty: "Type | str") -> "TypeAlias":
        self._target = as_type(ty)
        return self

    def target(self) -> Type:
        return self._target

    def render(self, fmt: Formatter) -> None:
        self.type_def.fmt_head("type", [], fmt)
        fmt.write(" = ")
        self._target.render(fmt)
        fmt.write(";\n")


# ===--- Functions ---=== #


class Block:
    """A brace-delimited body fragment: ``before {`` ... ``}after``."""

    def __init__(self, before: str | None = None):
        self.before = before
        self.after: str | None = None
        self.body: list["str | Block"] = []

    def set_after(self, after: str) -> "Block":
        self.after = after
        return self

    def line(self, line: str) -> "Block":
        self.body.append(line)
        return self

    def push_block(self, block: "Block") -> "Block":
        self.body.append(block)
        return self

    def render(self, fmt: Formatter) -> None:
        if self.before is not None:
            fmt.write(self.before)
        fmt.block(lambda f: _render_body(self.body, f), suffix=self.after or "")


def _render_body(body: list["str | Block"], fmt: Formatter) -> None:
    for item in body:
        if isinstance(item, Block):
            item.render(fmt)
        else:
            fmt.write(f"{item}\n")


class Function:
    KIND_RANK = KIND_RANKS["function"]

    def __init__(self, name: str):
        self.name = name
        self.docs: Docs | None = None
        self.lint_allow: str | None = None
        self.visibility: str | None = None
        self.generics: list[str] = []
        self.self_arg: str | None = None
        self.args: list[Field] = []
        self.return_type: Type | None = None
        self.bounds: list[Bound] = []
        self.body: list["str | Block"] | None = None
        self.attributes: list[str] = []
        self.abi: str | None = None
        self.is_async = False

    def sort_key(self) -> tuple[str, int]:
        return (self.name, self.KIND_RANK)

    def doc(self, docs: str) -> "Function":
        self.docs = Docs(docs)
        return self

    def allow(self, allow: str) -> "Function":
        self.lint_allow = allow
        return self

    def vis(self, vis: str) -> "Function":
        self.visibility = vis
        return self

    def generic(self, name: str) -> "Function":
        self.generics.append(name)
        return self

    def arg_self(self) -> "Function":
        self.self_arg = "self"
        return self

    def arg_ref_self(self) -> "Function":
        self.self_arg = "&self"
        return self

    def arg_mut_self(self) -> "Function":
        self.self_arg = "&mut self"
        return self

    def arg(self, name: str, ty: "Type | str") -> "Function":
        self.args.append(Field(name, ty))
        return self

    def ret(self, ty: "Type | str") -> "Function":
        self.return_type = as_type(ty)
        return self

    def bound(self, name: str, ty: "Type | str") -> "Function":
        self.bounds.append(Bound(name, [as_type(ty)]))
        return self

    def attr(self, attr: str) -> "Function":
        self.attributes.append(attr)
        return self

    def extern_abi(self, abi: str) -> "Function":
        self.abi = abi
        return self

    def set_async(self, is_async: bool = True) -> "Function":
        self.is_async = is_async
        return self

    def line(self, line: str) -> "Function":
        if self.body is None:
            self.body = []
        self.body.append(line)
        return self

    def push_block(self, block: Block) -> "Function":
        if self.body is None:
            self.body = []
        self.body.append(block)
        return self

    def render(self, fmt: Formatter, is_trait: bool = False) -> None:
        """Render the function.

        In trait mode a visibility is rejected and a missing body renders as
        a ``;``-terminated signature. Outside traits a body is required.

        Raises:
            UsageError: TRAIT_FN_VISIBILITY or MISSING_FN_BODY.
        """
        if self.docs is not None:
            self.docs.render(fmt)
        if self.lint_allow is not None:
            fmt.write(f"#[allow({self.lint_allow})]\n")
        for attr in self.attributes:
            fmt.write(f"#[{attr}]\n")
        if is_trait and self.visibility is not None:
            raise UsageError(
                "TRAIT_FN_VISIBILITY",
                f"Trait function {self.name!r} cannot have a visibility modifier",
            )
        if self.visibility is not None:
            fmt.write(f"{self.visibility} ")
        if self.abi is not None:
            fmt.write(f'extern "{self.abi}" ')
        if self.is_async:
            fmt.write("async ")
        fmt.write(f"fn {self.name}")
        fmt_generics(self.generics, fmt)
        fmt.write("(")
        if self.self_arg is not None:
            fmt.write(self.self_arg)
        for i, arg in enumerate(self.args):
            if i or self.self_arg is not None:
                fmt.write(", ")
            fmt.write(f"{arg.name}: ")
            arg.ty.render(fmt)
        fmt.write(")")
        if self.return_type is not None:
            fmt.write(" -> ")
            self.return_type.render(fmt)
        fmt_bounds(self.bounds, fmt)

        if self.body is not None:
            fmt.block(lambda f: _render_body(self.body, f))
        elif is_trait:
            fmt.write(";\n")
        else:
            raise UsageError(
                "MISSING_FN_BODY",
                f"Function {self.name!r} has no body",
                "Add at least one body line with .line(...), or declare it inside a trait.",
            )


# ===--- Traits and impls ---=== #


class AssociatedType:
    def __init__(self, name: str):
        self.name = name
        self.bounds: list[Type] = []

    def bound(self, ty: "Type | str") -> "AssociatedType":
        self.bounds.append(as_type(ty))
        return self


class Trait(_TypeDefBuilder):
    KIND_RANK = KIND_RANKS["trait"]

    def __init__(self, name: str):
        super().__init__(name)
        self.parents: list[Type] = []
        self.associated_tys: list[AssociatedType] = []
        self.fns: list[Function] = []

    def parent(self, ty: "Type | str") -> "Trait":
        self.parents.append(as_type(ty))
        return self

    def associated_type(self, name: str) -> AssociatedType:
        self.associated_tys.append(AssociatedType(name))
        return self.associated_tys[-1]

    def new_fn(self, name: str) -> Function:
        self.push_fn(Function(name))
        return self.fns[-1]

    def push_fn(self, item: Function) -> "Trait":
        self.fns.append(item)
        return self

    def render(self, fmt: Formatter) -> None:
        self.type_def.fmt_head("trait", self.parents, fmt)

        def _body(fmt: Formatter) -> None:
            for assoc in self.associated_tys:
                fmt.write(f"type {assoc.name}")
                if assoc.bounds:
                    fmt.write(": ")
                    fmt_bound_rhs(assoc.bounds, fmt)
                fmt.write(";\n")
            for i, func in enumerate(self.fns):
                if i or self.associated_tys:
                    fmt.write("\n")
                func.render(fmt, is_trait=True)

        fmt.block(_body)


class Impl:
    """An ``impl`` block, optionally implementing a trait for the target."""

    KIND_RANK = KIND_RANKS["impl"]

    def __init__(self, target: "Type | str"):
        self.target = as_type(target)
        self.generics: list[str] = []
        self.trait_ty: Type | None = None
        self.assoc_csts: list[Field] = []
        self.assoc_tys: list[Field] = []
        self.bounds: list[Bound] = []
        self.fns: list[Function] = []
        self.macros: list[str] = []

    def key_for_sorting(self) -> Type:
        """Type used to place this impl in scope order.

        Generic targets implementing ``From<X>`` sort next to ``X``; other
        generic trait impls sort next to the trait; everything else sorts
        next to the target.
        """
        if not self.target.generics or self.trait_ty is None:
            return self.target
        if self.trait_ty.name == "From" and self.trait_ty.generics:
            return self.trait_ty.generics[0]
        return self.trait_ty

    def sort_key(self) -> tuple[str, int]:
        return (self.key_for_sorting().key_for_sorting(), self.KIND_RANK)

    def generic(self, name: str) -> "Impl":
        self.generics.append(name)
        return self

    def target_generic(self, ty: "Type | str") -> "Impl":
        self.target.generic(ty)
        return self

    def impl_trait(self, ty: "Type | str") -> "Impl":
        self.trait_ty = as_type(ty)
        return self

    def macro(self, macro: str) -> "Impl":
        self.macros.append(macro)
        return self

    def associate_const(
        self, name: str, ty: "Type | str", value: str, visibility: str | None = None
    ) -> "Impl":
        self.assoc_csts.append(Field(name, ty, value=value, visibility=visibility))
        return self

    def associate_type(self, name: str, ty: "Type | str") -> "Impl":
        self.assoc_tys.append(Field(name, ty))
        return self

    def bound(self, name: str, ty: "Type | str") -> "Impl":
        self.bounds.append(Bound(name, [as_type(ty)]))
        return self

    def new_fn(self, name: str) -> Function:
        self.push_fn(Function(name))
        return self.fns[-1]

    def push_fn(self, item: Function) -> "Impl":
        self.fns.append(item)
        return self

    def render(self, fmt: Formatter) -> None:
        for m in self.macros:
            fmt.write(f"{m}\n")
        fmt.write("impl")
        fmt_generics(self.generics, fmt)
        if self.trait_ty is not None:
            fmt.write(" ")
            self.trait_ty.render(fmt)
            fmt.write(" for")
        fmt.write(" ")
        self.target.render(fmt)
        fmt_bounds(self.bounds, fmt)

        def _body(fmt: Formatter) -> None:
            for cst in self.assoc_csts:
                if cst.visibility is not None:
                    fmt.write(f"{cst.visibility} ")
                fmt.write(f"const {cst.name}: ")
                cst.ty.render(fmt)
                fmt.write(f" = {cst.value};\n")
            for ty in self.assoc_tys:
                fmt.write(f"type {ty.name} = ")
                ty.ty.render(fmt)
                fmt.write(";\n")
            for i, func in enumerate(self.fns):
                if i or self.assoc_tys:
                    fmt.write("\n")
                func.render(fmt)

        fmt.block(_body)


# ===--- Imports ---=== #


class Import:
    """One ``use`` record keyed by (path, name) inside an ImportTable."""

    def __init__(self, path: str, name: str, alias: str | None = None):
        base_line = f"{path}::{name}"
        self.line = base_line if alias is None else f"{base_line} as {alias}"
        self.visibility: str | None = None
        self.alias = alias

    def vis(self, vis: str) -> "Import":
        self.visibility = vis
        return self

    def set_alias(self, alias: str | None) -> "Import":
        self.alias = alias
        return self


class ImportTable:
    """Ordered two-level mapping: path -> name -> Import.

    Both levels keep first-seen insertion order; that order is the
    tie-break inside each visibility group when formatting.
    """

    def __init__(self):
        self._paths: dict[str, dict[str, Import]] = {}

    def __bool__(self) -> bool:
        return bool(self._paths)

    def __len__(self) -> int:
        return sum(len(names) for names in self._paths.values())

    def get(self, path: str, name: str) -> Import | None:
        return self._paths.get(path, {}).get(name)

    def new_import(self, path: str, name: str, alias: str | None = None) -> Import:
        """Register ``use path::name`` and return its record.

        A namespaced name such as ``a::B`` imports its first segment ``a``.
        A repeated (path, name) returns the existing record unchanged.
        """
        name = name.split("::", 1)[0]
        names = self._paths.setdefault(path, {})
        existing = names.get(name)
        if existing is not None:
            logger.debug("Collapsed duplicate import %s::%s", path, name)
            return existing
        names[name] = Import(path, name, alias)
        return names[name]

    def merge(self, other: "ImportTable") -> None:
        for path, names in other._paths.items():
            self._paths.setdefault(path, {}).update(
                (name, copy.copy(record)) for name, record in names.items()
            )

    def format(self, fmt: Formatter) -> None:
        """Emit consolidated ``use`` lines.

        Grouped by visibility (first-seen order, no visibility is its own
        group), then by path in first-seen order. Aliased names get one line
        each; the remaining names of a path share one line, braced when
        there is more than one.
        """
        visibilities: list[str | None] = []
        for names in self._paths.values():
            for record in names.values():
                if record.visibility not in visibilities:
                    visibilities.append(record.visibility)

        for vis in visibilities:
            prefix = "" if vis is None else f"{vis} "
            for path, names in self._paths.items():
                aliased: list[str] = []
                simple: list[str] = []
                for name, record in names.items():
                    if record.visibility != vis:
                        continue
                    if record.alias is None:
                        simple.append(name)
                    else:
                        aliased.append(f"{name} as {record.alias}")

                for entry in aliased:
                    fmt.write(f"{prefix}use {path}::{entry};\n")
                if len(simple) == 1:
                    fmt.write(f"{prefix}use {path}::{simple[0]};\n")
                elif simple:
                    fmt.write(f"{prefix}use {path}::{{{', '.join(simple)}}};\n")


# ===--- Scope ---=== #


class Raw:
    def __init__(self, text: str):
        self.text = text


class Scope:
    """Container of declarations and imports rendered in a stable order.

    Render sequence:
        1. Raw text items, verbatim, one per line, then a blank line.
        2. Consolidated imports (ImportTable.format), then a blank line.
        3. Every other item sorted by (identifier, kind rank), with one
           blank line between consecutive items.

    Steps 1 and 2 are skipped (blank line included) when empty. The order of
    step 3 depends only on the set of items, not on insertion order; items
    with equal keys keep insertion order.
    """

    def __init__(self):
        self._docs: Docs | None = None
        self._imports = ImportTable()
        self._items: list = []

    @property
    def docs(self) -> str | None:
        return None if self._docs is None else self._docs.docs

    @property
    def imports(self) -> ImportTable:
        return self._imports

    @property
    def items(self) -> tuple:
        return tuple(self._items)

    def doc(self, docs: str) -> "Scope":
        self._docs = Docs(docs)
        return self

    def import_(self, path: str, name: str, alias: str | None = None) -> Import:
        return self._imports.new_import(path, name, alias)

    def push_import(self, path: str, name: str, alias: str | None = None) -> "Scope":
        self.import_(path, name, alias)
        return self

    def _push(self, item: _T) -> _T:
        self._items.append(item)
        return item

    def new_module(self, name: str) -> "Module":
        self.push_module(Module(name))
        return self._items[-1]

    def get_module(self, name: str) -> "Module | None":
        for item in self._items:
            if isinstance(item, Module) and item.name == name:
                return item
        return None

    def get_or_new_module(self, name: str) -> "Module":
        module = self.get_module(name)
        if module is not None:
            return module
        return self.new_module(name)

    def push_module(self, item: "Module") -> "Scope":
        if self.get_module(item.name) is not None:
            raise UsageError(
                "DUPLICATE_MODULE",
                f"Module {item.name!r} is already defined in this scope",
                "Use get_or_new_module() to reuse an existing module.",
            )
        self._items.append(item)
        return self

    def new_struct(self, name: str) -> Struct:
        return self._push(Struct(name))

    def push_struct(self, item: Struct) -> "Scope":
        self._push(item)
        return self

    def new_fn(self, name: str) -> Function:
        return self._push(Function(name))

    def push_fn(self, item: Function) -> "Scope":
        self._push(item)
        return self

    def new_trait(self, name: str) -> Trait:
        return self._push(Trait(name))

    def push_trait(self, item: Trait) -> "Scope":
        self._push(item)
        return self

    def new_enum(self, name: str) -> Enum:
        return self._push(Enum(name))

    def push_enum(self, item: Enum) -> "Scope":
        self._push(item)
        return self

    def new_impl(self, target: "Type | str") -> Impl:
        return self._push(Impl(target))

    def push_impl(self, item: Impl) -> "Scope":
        self._push(item)
        return self

    def new_type_alias(self, name: str, target: "Type | str") -> TypeAlias:
        return self._push(TypeAlias(name, target))

    def push_type_alias(self, item: TypeAlias) -> "Scope":
        self._push(item)
        return self

    def raw(self, text: str) -> "Scope":
        """Add text emitted verbatim ahead of imports and declarations."""
        self._push(Raw(text))
        return self

    def sorted_items(self) -> list:
        """Non-raw items in render order."""
        decls = [item for item in self._items if not isinstance(item, Raw)]
        return sorted(decls, key=lambda item: item.sort_key())

    def render(self, fmt: Formatter) -> None:
        """Render the scope through fmt.

        Raises:
            RenderError: The sink raised OSError; chained to the original.
            UsageError: A declaration cannot be rendered as configured.
        """
        logger.debug(
            "Rendering scope: %d items, %d imports", len(self._items), len(self._imports)
        )
        try:
            self._render(fmt)
        except OSError as err:
            raise RenderError(f"Output sink rejected a write: {err}") from err

    def _render(self, fmt: Formatter) -> None:
        raws = [item for item in self._items if isinstance(item, Raw)]
        for raw in raws:
            fmt.write(f"{raw.text}\n")
        if raws:
            fmt.write("\n")

        self._imports.format(fmt)
        if self._imports:
            fmt.write("\n")

        for i, item in enumerate(self.sorted_items()):
            if i:
                fmt.write("\n")
            item.render(fmt)

    def to_string(self, config: FormatConfig | None = None) -> str:
        config = config or FormatConfig()
        buf = io.StringIO()
        self.render(Formatter(buf, config))
        text = buf.getvalue()
        if config.trim_trailing_newline and text.endswith("\n"):
            text = text[:-1]
        return text

    def __str__(self) -> str:
        return self.to_string()

    def append(self, other: "Scope") -> "Scope":
        """Merge other into this scope.

        Docs are concatenated, import tables merged path by path and name by
        name, and other's items are appended (as copies) after this scope's.
        """
        if other._docs is not None:
            if self._docs is None:
                self._docs = Docs(other._docs.docs)
            else:
                self._docs.append(other._docs.docs)
        self._imports.merge(other._imports)
        self._items.extend(copy.deepcopy(other._items))
        logger.debug("Merged scope: now %d items", len(self._items))
        return self


# ===--- Modules ---=== #


class Module:
    """``mod name { ... }`` wrapping a nested Scope."""

    KIND_RANK = KIND_RANKS["module"]

    def __init__(self, name: str):
        self.name = name
        self.visibility: str | None = None
        self.docs: Docs | None = None
        self.attributes: list[str] = []
        self.scope = Scope()

    def sort_key(self) -> tuple[str, int]:
        return (self.name, self.KIND_RANK)

    def vis(self, vis: str) -> "Module":
        self.visibility = vis
        return self

    def doc(self, docs: str) -> "Module":
        self.docs = Docs(docs)
        return self

    def attr(self, attr: str) -> "Module":
        self.attributes.append(attr)
        return self

    def import_(self, path: str, name: str, alias: str | None = None) -> "Module":
        self.scope.import_(path, name, alias)
        return self

    def new_module(self, name: str) -> "Module":
        return self.scope.new_module(name)

    def get_module(self, name: str) -> "Module | None":
        return self.scope.get_module(name)

    def get_or_new_module(self, name: str) -> "Module":
        return self.scope.get_or_new_module(name)

    def push_module(self, item: "Module") -> "Module":
        self.scope.push_module(item)
        return self

    def new_struct(self, name: str) -> Struct:
        return self.scope.new_struct(name)

    def push_struct(self, item: Struct) -> "Module":
        self.scope.push_struct(item)
        return self

    def new_fn(self, name: str) -> Function:
        return self.scope.new_fn(name)

    def push_fn(self, item: Function) -> "Module":
        self.scope.push_fn(item)
        return self

    def new_enum(self, name: str) -> Enum:
        return self.scope.new_enum(name)

    def push_enum(self, item: Enum) -> "Module":
        self.scope.push_enum(item)
        return self

    def new_impl(self, target: "Type | str") -> Impl:
        return self.scope.new_impl(target)

    def push_impl(self, item: Impl) -> "Module":
        self.scope.push_impl(item)
        return self

    def new_trait(self, name: str) -> Trait:
        return self.scope.new_trait(name)

    def push_trait(self, item: Trait) -> "Module":
        self.scope.push_trait(item)
        return self

    def new_type_alias(self, name: str, target: "Type | str") -> TypeAlias:
        return self.scope.new_type_alias(name, target)

    def push_type_alias(self, item: TypeAlias) -> "Module":
        self.scope.push_type_alias(item)
        return self

    def raw(self, text: str) -> "Module":
        self.scope.raw(text)
        return self

    def render(self, fmt: Formatter) -> None:
        if self.docs is not None:
            self.docs.render(fmt)
        for attr in self.attributes:
            fmt.write(f"#[{attr}]\n")
        if self.visibility is not None:
            fmt.write(f"{self.visibility} ")
        fmt.write(f"mod {self.name}")
        fmt.block(self.scope.render)
