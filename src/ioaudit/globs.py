"""Glob compilation for declared input/output patterns.

Wildcards are recognised longest-first so that ``**/*`` is never read as
``**`` followed by ``/*``:

* ``**/*`` matches any number of directories followed by one path segment,
  including zero directories (``src/**/*.ts`` matches ``src/a.ts``);
* ``**`` matches any run of characters, separators included;
* ``*`` matches any run of characters within one path segment;
* ``?`` matches exactly one character.

A trailing ``/**/*`` or ``/**`` also matches the anchor directory itself.
Patterns without wildcards match the path itself or anything beneath it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

WILDCARD_PATTERN = re.compile(r"\*\*/\*|\*\*|\*|\?")

WILDCARD_REGEX = {
    "**/*": "(?:.*/)?[^/]*",
    "**": ".*",
    "*": "[^/]*",
    "?": ".",
}

TRAILING_RECURSIVE = ("/**/*", "/**")


@dataclass(frozen=True, slots=True)
class GlobPattern:
    source: str
    regex: re.Pattern[str] | None = None

    def matches(self, path: str) -> bool:
        if self.regex is None:
            return path == self.source or path.startswith(self.source.rstrip("/") + "/")
        return self.regex.fullmatch(path) is not None

    __call__ = matches


def has_wildcards(glob: str) -> bool:
    return WILDCARD_PATTERN.search(glob) is not None


def _translate(glob: str) -> str:
    parts: list[str] = []
    position = 0
    for match in WILDCARD_PATTERN.finditer(glob):
        parts.append(re.escape(glob[position:match.start()]))
        parts.append(WILDCARD_REGEX[match.group()])
        position = match.end()
    parts.append(re.escape(glob[position:]))
    return "".join(parts)


def glob_to_regex(glob: str) -> str:
    for suffix in TRAILING_RECURSIVE:
        if glob.endswith(suffix):
            return _translate(glob[: -len(suffix)]) + "(?:/.*)?"
    return _translate(glob)


def compile_glob(glob: str) -> GlobPattern:
    if not has_wildcards(glob):
        return GlobPattern(source=glob)
    return GlobPattern(source=glob, regex=re.compile(glob_to_regex(glob)))
