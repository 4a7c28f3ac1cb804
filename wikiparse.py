"""
wikiparse
========================================

Structural helpers shared by every NanonaBot2 task. They locate a bounded
region of wikitext inside a larger page so that a task can rewrite that
region and leave the rest of the page byte-for-byte intact:

* nested bracket matching (``{{ }}``, ``[[ ]]``, ``{| |}``)
* template extraction by literal name prefix
* splitting on a delimiter outside of nested brackets
* a flat, source-ordered index of ``== heading ==`` sections

Everything here is a pure function of its text input. No I/O, no caching.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

###############################################################################
# Errors                                                                      #
###############################################################################


class MalformedWikitextError(ValueError):
    """The text is structurally broken (e.g. a bracket that never closes)."""


class UnterminatedBracketError(MalformedWikitextError):
    def __init__(self, open_token: str, start: int):
        super().__init__(f"unterminated {open_token!r} opened at offset {start}")
        self.open_token = open_token
        self.start = start


class UnterminatedTemplateError(UnterminatedBracketError):
    """A ``{{`` located by :func:`find_template` has no matching ``}}``."""


class BracketNotFoundError(LookupError):
    """No opening token occurs at or after the scan start."""


class DuplicateSectionError(LookupError):
    """More than one section matched a lookup that required uniqueness."""


###############################################################################
# Spans                                                                       #
###############################################################################


@dataclass(frozen=True)
class Span:
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.start > self.end:
            raise ValueError(f"invalid span [{self.start}, {self.end})")

    def __len__(self) -> int:
        return self.end - self.start

    def slice(self, text: str) -> str:
        return text[self.start : self.end]


def replace_span(text: str, span: Span, replacement: str) -> str:
    return text[: span.start] + replacement + text[span.end :]


def insert_after(text: str, span: Span, addition: str) -> str:
    return replace_span(text, Span(span.end, span.end), addition)


def remove_span(text: str, span: Span) -> str:
    return replace_span(text, span, "")


###############################################################################
# Bracket scanner                                                             #
###############################################################################

TEMPLATE_OPEN = "{{"
TEMPLATE_CLOSE = "}}"

TEMPLATE_CONTEXT = (TEMPLATE_OPEN, TEMPLATE_CLOSE)
LINK_CONTEXT = ("[[", "]]")
TABLE_CONTEXT = ("{|", "|}")
DEFAULT_CONTEXTS: Tuple[Tuple[str, str], ...] = (TEMPLATE_CONTEXT, LINK_CONTEXT, TABLE_CONTEXT)


def _match_token(text: str, i: int, tokens: Sequence[str]) -> Optional[int]:
    """Index into ``tokens`` of the first one that starts at ``text[i]``."""
    for k, token in enumerate(tokens):
        if text.startswith(token, i):
            return k
    return None


def scan_brackets(text: str, start: int, open_token: str, close_token: str) -> Span:
    """
    Return the span of the first balanced ``open_token … close_token`` run
    beginning at or after ``start``.

    Depth is counted over whole tokens, not single characters, and a
    consumed token is never re-examined, so ``{{{`` is one ``{{`` plus a
    literal ``{``. Inside the run the close token is tried before the open
    token. Close tokens seen before the first opener are ignored.

    Raises:
        BracketNotFoundError: no ``open_token`` at or after ``start``.
        UnterminatedBracketError: end of text reached with depth > 0.
    """
    if not open_token or not close_token:
        raise ValueError("bracket tokens must be non-empty")

    first = text.find(open_token, start)
    if first == -1:
        raise BracketNotFoundError(f"no {open_token!r} at or after offset {start}")

    depth = 0
    i = first
    n = len(text)
    while i < n:
        tokens = (close_token, open_token) if depth else (open_token,)
        hit = _match_token(text, i, tokens)
        if hit is None:
            i += 1
            continue
        i += len(tokens[hit])
        if depth and hit == 0:
            depth -= 1
            if depth == 0:
                return Span(first, i)
        else:
            depth += 1
    raise UnterminatedBracketError(open_token, first)


###############################################################################
# Context-aware splitting                                                     #
###############################################################################


def _ordered_contexts(contexts: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    # longest tokens first, ties in a fixed order so set input is deterministic
    pairs = list(dict.fromkeys(tuple(c) for c in contexts))
    return sorted(pairs, key=lambda p: (-max(len(p[0]), len(p[1])), p))


def split_with_context(
    text: str,
    delimiter: str,
    contexts: Iterable[Tuple[str, str]] = DEFAULT_CONTEXTS,
) -> List[str]:
    """
    Split ``text`` on ``delimiter`` except where it falls inside one of the
    bracket ``contexts``.

    >>> split_with_context("a|[[b|c]]|d", "|", {("[[", "]]")})
    ['a', '[[b|c]]', 'd']

    Open contexts form a stack and, as in :func:`scan_brackets`, the close
    token is tried before any open token. Only the innermost context can be
    closed, so the ``|}`` in ``{{a|}}`` is never read as a table close. An
    unmatched close token is copied through as plain text. The last segment
    is always emitted, even when empty.
    """
    if not delimiter:
        raise ValueError("delimiter must be non-empty")

    pairs = _ordered_contexts(contexts)
    opens = [open_tok for open_tok, _close in pairs]
    stack: List[int] = []  # indices into pairs, innermost last
    parts: List[str] = []
    buf: List[str] = []
    i = 0
    n = len(text)

    while i < n:
        if stack:
            close_tok = pairs[stack[-1]][1]
            if _match_token(text, i, (close_tok,)) is not None:
                stack.pop()
                buf.append(close_tok)
                i += len(close_tok)
                continue

        hit = _match_token(text, i, opens)
        if hit is not None:
            stack.append(hit)
            buf.append(opens[hit])
            i += len(opens[hit])
            continue

        if not stack and text.startswith(delimiter, i):
            parts.append("".join(buf))
            buf = []
            i += len(delimiter)
            continue

        buf.append(text[i])
        i += 1

    parts.append("".join(buf))
    return parts


###############################################################################
# Templates                                                                   #
###############################################################################


@dataclass(frozen=True)
class Template:
    name: str
    span: Span
    params: Tuple[str, ...] = ()

    def wikitext(self, text: str) -> str:
        return self.span.slice(text)

    def named_params(self) -> Dict[str, str]:
        """``key = value`` parameters, both sides stripped. Positional ones are skipped."""
        out: Dict[str, str] = {}
        for raw in self.params:
            key, sep, value = raw.partition("=")
            if sep and key.strip():
                out[key.strip()] = value.strip()
        return out


_PARAM_CONTEXTS = (TEMPLATE_CONTEXT, LINK_CONTEXT)


def _template_at(text: str, pos: int) -> Template:
    try:
        span = scan_brackets(text, pos, TEMPLATE_OPEN, TEMPLATE_CLOSE)
    except UnterminatedBracketError as e:
        raise UnterminatedTemplateError(TEMPLATE_OPEN, e.start) from None
    inner = text[span.start + len(TEMPLATE_OPEN) : span.end - len(TEMPLATE_CLOSE)]
    name, *params = split_with_context(inner, "|", _PARAM_CONTEXTS)
    return Template(name, span, tuple(params))


def _prefix_offsets(text: str, prefix: str) -> List[int]:
    offsets = []
    i = text.find(prefix)
    while i != -1:
        offsets.append(i)
        i = text.find(prefix, i + 1)
    return offsets


def _check_prefix(prefix: str) -> None:
    # the match must begin at the prefix itself, not at some later "{{"
    if not prefix.startswith(TEMPLATE_OPEN):
        raise ValueError(f"template prefix must start with {TEMPLATE_OPEN!r}, got {prefix!r}")


def find_template(text: str, prefix: str, occurrence: str = "first") -> Optional[Template]:
    """
    Locate the first or last literal occurrence of ``prefix`` (e.g.
    ``"{{Name"``) and return the balanced template starting there.

    Returns ``None`` when ``prefix`` does not occur. Raises
    :class:`UnterminatedTemplateError` when the selected template never
    closes; callers should log that rather than treat it as absent.
    ``prefix`` must begin with ``{{``.
    """
    if occurrence not in ("first", "last"):
        raise ValueError(f"occurrence must be 'first' or 'last', not {occurrence!r}")
    _check_prefix(prefix)

    pos = text.find(prefix) if occurrence == "first" else text.rfind(prefix)
    if pos == -1:
        return None
    return _template_at(text, pos)


def find_templates(text: str, prefix: str) -> List[Template]:
    """Every occurrence of ``prefix`` as a template, in source order."""
    _check_prefix(prefix)
    return [_template_at(text, pos) for pos in _prefix_offsets(text, prefix)]


###############################################################################
# Sections                                                                    #
###############################################################################


@dataclass(frozen=True)
class Section:
    name: str
    level: int
    span: Span  # heading through the next heading of level <= this one
    own_span: Span  # heading through the next heading of any level
    index: int

    def wikitext(self, text: str) -> str:
        return self.span.slice(text)

    def body(self, text: str) -> str:
        """Everything after the heading line, including subsections."""
        chunk = self.wikitext(text)
        _heading, _nl, rest = chunk.partition("\n")
        return rest


def _heading(line: str, max_level: int) -> Optional[Tuple[int, str]]:
    s = line.strip()
    lead = len(s) - len(s.lstrip("="))
    trail = len(s) - len(s.rstrip("="))
    if lead < 2 or lead != trail or lead > max_level or lead * 2 >= len(s):
        return None
    name = s[lead:-trail].strip()
    if not name:
        return None
    return lead, name


def parse_sections(text: str, max_level: int = 6) -> List[Section]:
    """
    Index the ``== heading ==`` sections of ``text`` as a flat list in
    source order.

    Headings deeper than ``max_level`` are treated as ordinary body text of
    the enclosing section. Text before the first heading (the preamble) is
    not represented; ``preamble(text, sections)`` returns it.
    """
    if max_level < 2:
        raise ValueError("max_level must be at least 2")

    heads: List[Tuple[int, int, str]] = []  # (offset, level, name)
    offset = 0
    for line in text.split("\n"):
        found = _heading(line, max_level)
        if found:
            heads.append((offset, found[0], found[1]))
        offset += len(line) + 1

    sections: List[Section] = []
    end = len(text)
    for i, (start, level, name) in enumerate(heads):
        own_end = heads[i + 1][0] if i + 1 < len(heads) else end
        tree_end = next((h[0] for h in heads[i + 1 :] if h[1] <= level), end)
        sections.append(Section(name, level, Span(start, tree_end), Span(start, own_end), i))
    return sections


def preamble(text: str, sections: Sequence[Section]) -> str:
    return text[: sections[0].span.start] if sections else text


def subsections(sections: Sequence[Section], parent: Section) -> List[Section]:
    """Sections nested under ``parent`` (any depth), in source order."""
    return [
        s
        for s in sections[parent.index + 1 :]
        if s.span.start < parent.span.end and s.level > parent.level
    ]


def find_section(
    sections: Sequence[Section],
    name: str,
    level: Optional[int] = None,
    policy: str = "first",
    normalize: Optional[Callable[[str], str]] = None,
) -> Optional[Section]:
    """
    Look a section up by name (and optionally level).

    Duplicate headings are legal, so ``policy`` decides which one wins:
    ``"first"``, ``"last"``, or ``"unique"`` (raise on more than one).
    """
    if policy not in ("first", "last", "unique"):
        raise ValueError(f"unknown policy {policy!r}")
    norm = normalize or (lambda s: s)
    want = norm(name)
    hits = [
        s for s in sections
        if (level is None or s.level == level) and norm(s.name) == want
    ]
    if not hits:
        return None
    if policy == "unique" and len(hits) > 1:
        raise DuplicateSectionError(f"{len(hits)} sections named {name!r}")
    return hits[-1] if policy == "last" else hits[0]


###############################################################################
# Regex escaping                                                              #
###############################################################################


def escape_regex(literal: str) -> str:
    """Escape ``literal`` so a pattern built from it matches only that literal."""
    return re.escape(literal)
