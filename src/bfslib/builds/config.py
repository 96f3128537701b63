# BFS library - builds - build configuration matching
# Copyright (C) 2025  Clyso GmbH
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.

from __future__ import annotations

import fnmatch
import re
from pathlib import Path
from typing import Annotated, ClassVar, Literal, override

import pydantic
import yaml

from bfslib.builds import logger as parent_logger
from bfslib.errors import BFSError

logger = parent_logger.getChild("config")


ClassInheritanceMap = dict[str, str]

_CLASS_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_+.-]*$")


class BuildClassExprError(BFSError):
    @override
    def __str__(self) -> str:
        return "Build class expression error" + (f": {self.msg}" if self.msg else "")


class InvalidPatternError(BFSError):
    @override
    def __str__(self) -> str:
        return "Invalid pattern" + (f": {self.msg}" if self.msg else "")


class BuildTargetConfigsError(BFSError):
    @override
    def __str__(self) -> str:
        return "Build target configs error" + (f": {self.msg}" if self.msg else "")


class BuildClassTerm(pydantic.BaseModel):
    """
    A single build class expression term.

    A term is either simple, referring to a class by name, or a nested,
    parenthesized, list of terms.
    """

    operation: Literal["+", "-", "&"]
    inverted: bool = pydantic.Field(default=False)
    name: str | None = pydantic.Field(default=None)
    expr: list[BuildClassTerm] | None = pydantic.Field(default=None)

    @pydantic.model_validator(mode="after")
    def _check_kind(self) -> BuildClassTerm:
        if (self.name is None) == (self.expr is None):
            raise ValueError("term must either have a class name or an expression")
        if self.expr is not None and not self.expr:
            raise ValueError("empty nested expression")
        return self

    @property
    def simple(self) -> bool:
        return self.name is not None

    @override
    def __str__(self) -> str:
        op = self.operation + ("!" if self.inverted else "")
        if self.name is not None:
            return f"{op}{self.name}"
        assert self.expr is not None
        return f"{op}( " + " ".join(str(t) for t in self.expr) + " )"


def _class_belongs(cls: str, name: str, inheritance_map: ClassInheritanceMap) -> bool:
    """Check whether `cls`, or any of its bases, is `name`."""
    seen: set[str] = set()
    while cls not in seen:
        if cls == name:
            return True
        seen.add(cls)
        base = inheritance_map.get(cls)
        if base is None:
            break
        cls = base
    return False


def _match_terms(
    terms: list[BuildClassTerm],
    classes: list[str],
    inheritance_map: ClassInheritanceMap,
    result: bool,
) -> bool:
    for t in terms:
        # '+' may only turn false into true, while '-' and '&' may only turn
        # true into false.
        if (t.operation == "+") == result:
            continue

        if t.name is not None:
            m = any(_class_belongs(c, t.name, inheritance_map) for c in classes)
        else:
            assert t.expr is not None
            m = _match_terms(t.expr, classes, inheritance_map, False)

        if t.inverted:
            m = not m

        match t.operation:
            case "+":
                if m:
                    result = True
            case "-":
                if m:
                    result = False
            case "&":
                result = result and m

    return result


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    word = ""
    for c in text:
        if c.isspace() or c in "()":
            if word:
                tokens.append(word)
                word = ""
            if not c.isspace():
                tokens.append(c)
        else:
            word += c
    if word:
        tokens.append(word)
    return tokens


def _check_class_name(name: str) -> str:
    if not _CLASS_NAME_RE.match(name):
        raise BuildClassExprError(f"invalid class name '{name}'")
    return name


def _parse_terms(
    tokens: list[str], pos: int, nested: bool
) -> tuple[list[BuildClassTerm], int]:
    terms: list[BuildClassTerm] = []
    while pos < len(tokens):
        tok = tokens[pos]
        if tok == ")":
            if not nested:
                raise BuildClassExprError("unexpected ')'")
            return (terms, pos + 1)

        if tok[0] not in "+-&":
            raise BuildClassExprError(f"class operation expected instead of '{tok}'")

        op = tok[0]
        rest = tok[1:]
        inverted = rest.startswith("!")
        if inverted:
            rest = rest[1:]
        pos += 1

        if rest:
            terms.append(
                BuildClassTerm(
                    operation=op,  # pyright: ignore[reportArgumentType]
                    inverted=inverted,
                    name=_check_class_name(rest),
                )
            )
            continue

        if pos == len(tokens) or tokens[pos] != "(":
            raise BuildClassExprError(f"class name or '(' expected after '{tok}'")

        sub, pos = _parse_terms(tokens, pos + 1, True)
        if not sub:
            raise BuildClassExprError("empty nested expression")
        terms.append(
            BuildClassTerm(
                operation=op,  # pyright: ignore[reportArgumentType]
                inverted=inverted,
                expr=sub,
            )
        )

    if nested:
        raise BuildClassExprError("missing ')'")
    return (terms, pos)


class BuildClassExpr(pydantic.BaseModel):
    """
    A build class expression, as declared by a package.

    Its textual form is `[<underlying-class>... ':'] <term>...`, where each
    term is `('+'|'-'|'&')['!'](<class> | '(' <term>... ')')`. When there is
    no ':', text starting with an operation is an expression, while anything
    else is an underlying class set.
    """

    underlying_classes: list[str] = pydantic.Field(default=[])
    expr: list[BuildClassTerm] = pydantic.Field(default=[])
    comment: str = pydantic.Field(default="")

    @classmethod
    def parse(cls, text: str, comment: str = "") -> BuildClassExpr:
        uset_str: str
        expr_str: str
        if ":" in text:
            uset_str, expr_str = text.split(":", maxsplit=1)
        else:
            stripped = text.strip()
            if stripped and stripped[0] in "+-&":
                uset_str, expr_str = ("", text)
            else:
                uset_str, expr_str = (text, "")

        underlying = [_check_class_name(c) for c in uset_str.split()]
        terms, _ = _parse_terms(_tokenize(expr_str), 0, False)

        if not underlying and not terms:
            raise BuildClassExprError(f"empty build class expression '{text}'")

        return BuildClassExpr(
            underlying_classes=underlying, expr=terms, comment=comment
        )

    @classmethod
    def from_classes(
        cls, classes: list[str], operation: Literal["+", "-", "&"], comment: str
    ) -> BuildClassExpr:
        """Create an expression applying `operation` to each of `classes`."""
        return BuildClassExpr(
            expr=[BuildClassTerm(operation=operation, name=c) for c in classes],
            comment=comment,
        )

    def match(
        self,
        classes: list[str],
        inheritance_map: ClassInheritanceMap,
        result: bool,
    ) -> bool:
        """Apply this expression's terms to `result`, given a class set."""
        return _match_terms(self.expr, classes, inheritance_map, result)

    @override
    def __str__(self) -> str:
        terms = " ".join(str(t) for t in self.expr)
        if not self.underlying_classes:
            return terms
        uset = " ".join(self.underlying_classes)
        return f"{uset} : {terms}" if terms else uset


class BuildConstraint(pydantic.BaseModel):
    exclusion: bool
    config: str
    target: str | None = pydantic.Field(default=None)
    comment: str = pydantic.Field(default="")

    @override
    def __str__(self) -> str:
        kind = "exclude" if self.exclusion else "include"
        return f"{kind} {self.config}" + (f" {self.target}" if self.target else "")


class BuildTargetConfig(pydantic.BaseModel):
    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    target: str
    name: str
    classes: list[str] = pydantic.Field(default=[])
    machine_pattern: Annotated[
        str | None, pydantic.Field(alias="machine-pattern", default=None)
    ]


class BuildTargetConfigs(pydantic.BaseModel):
    """The set of build target configurations known to the build farm."""

    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    configs: list[BuildTargetConfig] = pydantic.Field(default=[])
    class_inheritance_map: Annotated[
        ClassInheritanceMap,
        pydantic.Field(alias="class-inheritance", default={}),
    ]

    @classmethod
    def load(cls, path: Path) -> BuildTargetConfigs:
        if not path.exists() or not path.is_file():
            msg = f"build target configs at '{path}' do not exist"
            logger.error(msg)
            raise BuildTargetConfigsError(msg)

        try:
            raw = yaml.safe_load(path.read_text())
            configs = BuildTargetConfigs.model_validate(raw)
        except (yaml.YAMLError, pydantic.ValidationError) as e:
            msg = f"error loading build target configs at '{path}': {e}"
            logger.error(msg)
            raise BuildTargetConfigsError(msg) from e

        seen: set[tuple[str, str]] = set()
        for c in configs.configs:
            if (c.target, c.name) in seen:
                msg = f"duplicate build target config '{c.target}/{c.name}'"
                logger.error(msg)
                raise BuildTargetConfigsError(msg)
            seen.add((c.target, c.name))

        logger.info(f"loaded {len(configs.configs)} build target configs from '{path}'")
        return configs

    def find(self, target: str, name: str) -> BuildTargetConfig | None:
        for c in self.configs:
            if c.target == target and c.name == name:
                return c
        return None


def belongs(
    config: BuildTargetConfig, cls: str, inheritance_map: ClassInheritanceMap
) -> bool:
    """Check whether the build target configuration belongs to the class."""
    return any(_class_belongs(c, cls, inheritance_map) for c in config.classes)


def sanitize_reason(comment: str) -> str:
    """
    Turn a comment into an exclusion reason.

    Only the first sentence is kept, and its first letter is lowercased if the
    first word looks like a regular capitalized word (e.g., 'Default').
    """
    r = comment.split(".", maxsplit=1)[0]
    if not r or not r[0].isupper():
        return r

    for c in r[1:]:
        if c.isspace():
            break
        if not c.islower():
            return r

    return r[0].lower() + r[1:]


def _pattern_terms(pattern: str) -> list[str]:
    """Split a pattern into terms, keeping bracket expressions whole."""
    terms: list[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c != "[":
            terms.append(c)
            i += 1
            continue

        j = i + 1
        if j < len(pattern) and pattern[j] == "!":
            j += 1
        # a ']' right after the opening bracket is part of the set.
        if j < len(pattern) and pattern[j] == "]":
            j += 1
        j = pattern.find("]", j)
        if j == -1:
            raise InvalidPatternError(f"unterminated bracket expression in '{pattern}'")
        terms.append(pattern[i : j + 1])
        i = j + 1

    return terms


def dash_components_to_path(pattern: str) -> str:
    """
    Convert a dash-separated name, or name pattern, into a directory path.

    Dashes become slashes, and a double star `**` becomes `*/**/*`, so that
    `foo**` matches both `foo` and `foo-bar`. A pattern ending in a single
    star is treated as ending in a double star, so that `linux*` also matches
    `linux-gcc`. Any further stars in a sequence are ignored.
    """
    terms = _pattern_terms(pattern)

    nstar = 0
    for t in reversed(terms):
        if t != "*":
            break
        nstar += 1
    if nstar == 1:
        terms.append("*")

    r = ""
    nstar = 0
    for t in terms:
        if t == "*":
            if nstar == 0:
                r += "*"
            elif nstar == 1:
                r += "/**/*"
            nstar += 1
            continue

        nstar = 0
        r += "/" if t == "-" else t

    return r + "/"


def _check_pattern(pattern: str) -> None:
    # only bracket expressions can be malformed.
    _ = _pattern_terms(pattern)


def _split_path(path: str) -> list[str]:
    if not path or path.startswith("/"):
        raise InvalidPatternError(f"invalid path '{path}'")
    components = path.rstrip("/").split("/")
    if any(not c for c in components):
        raise InvalidPatternError(f"empty component in '{path}'")
    return components


def _wildcard_only(component: str) -> bool:
    return bool(component) and all(c == "*" for c in component)


def _match_components(entry: list[str], pattern: list[str]) -> bool:
    if not pattern:
        return not entry

    head, rest = (pattern[0], pattern[1:])
    if head == "**":
        return any(_match_components(entry[i:], rest) for i in range(len(entry) + 1))

    if not entry:
        # absent entry components are matched by wildcard-only components.
        return _wildcard_only(head) and _match_components(entry, rest)

    return fnmatch.fnmatchcase(entry[0], head) and _match_components(entry[1:], rest)


def path_match(entry: str, pattern: str) -> bool:
    """
    Match a slash-separated path against a path pattern.

    `*`, `?` and bracket expressions match within a component, `**` matches
    any number of components, and wildcard-only pattern components also match
    absent trailing components of the entry.
    """
    _check_pattern(pattern)
    return _match_components(_split_path(entry), _split_path(pattern))


def _constraint_matches(c: BuildConstraint, config: BuildTargetConfig) -> bool:
    if not path_match(
        dash_components_to_path(config.name), dash_components_to_path(c.config)
    ):
        return False

    return c.target is None or path_match(
        dash_components_to_path(config.target), dash_components_to_path(c.target)
    )


def excluded(
    class_exprs: list[BuildClassExpr],
    constraints: list[BuildConstraint],
    config: BuildTargetConfig,
    inheritance_map: ClassInheritanceMap,
    default_underlying: str = "default",
) -> tuple[bool, str]:
    """
    Check whether a build target configuration is excluded for a package.

    Returns whether the configuration is excluded and, if so, the reason for
    its exclusion, if known.
    """
    reason = ""

    def _match(expr: BuildClassExpr, m: bool) -> bool:
        nonlocal reason
        pm = m
        m = expr.match(config.classes, inheritance_map, m)

        if m:
            reason = ""
        elif not reason and (pm or not expr.expr or expr.expr[0].operation == "+"):
            reason = sanitize_reason(expr.comment) or str(expr)

        return m

    if class_exprs and class_exprs[0].underlying_classes:
        first = class_exprs[0]
        ucs = BuildClassExpr.from_classes(first.underlying_classes, "+", first.comment)
    else:
        ucs = BuildClassExpr.from_classes([default_underlying], "+", "Default.")

    # any configuration not in the underlying class set is excluded, no matter
    # what the package's own expressions say.
    m = _match(ucs, False)
    if m:
        for expr in class_exprs:
            m = _match(expr, m)

    if not m:
        return (True, reason)

    for c in constraints:
        try:
            matches = _constraint_matches(c, config)
        except InvalidPatternError as e:
            logger.warning(f"ignoring build constraint '{c.config}': {e}")
            continue

        if matches:
            if not c.exclusion:
                return (False, "")
            return (True, sanitize_reason(c.comment) or str(c))

    return (False, "")
