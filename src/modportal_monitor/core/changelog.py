"""Extraction of a single version's section from a mod changelog."""

import re
from typing import Optional

SEPARATOR = "-" * 99
MAX_LENGTH = 4096
ELLIPSIS = "..."

_INDENT = re.compile(r"^ {0,4}")
_BLANK_RUNS = re.compile(r"\n{3,}")
_ISSUE_REF = re.compile(r"#(\d+)")

# Forge host -> issue path appended to the repository URL
FORGES = {
    "https://github.com/": "/issues/",
    "https://gitlab.com/": "/-/issues/",
    "https://codeberg.org/": "/issues/",
}


def truncate(text: str, limit: int = MAX_LENGTH) -> str:
    """Cut ``text`` to ``limit`` characters, ending with an ellipsis."""
    if len(text) > limit:
        return text[: limit - len(ELLIPSIS)] + ELLIPSIS
    return text


def _issue_path(source_url: Optional[str]) -> Optional[str]:
    if not source_url:
        return None
    for prefix, path in FORGES.items():
        if source_url.startswith(prefix) and len(source_url) > len(prefix):
            return path
    return None


def _split_header(section: str) -> tuple[Optional[str], list[str]]:
    """Return the section's version and the lines after its header."""
    lines = section.split("\n")
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("Version:"):
            return None, []
        return stripped[len("Version:"):].strip(), lines[index + 1:]
    return None, []


def _format_line(line: str) -> str:
    if not line.strip():
        return ""
    line = _INDENT.sub("", line, count=1).rstrip()
    if not line.startswith((" ", "\t")) and line.endswith(":"):
        line = f"**{line}**"
    return line


def extract_section(changelog: str, version: str, source_url: Optional[str] = None) -> str:
    """Extract and format the changelog section for ``version``.

    Args:
        changelog: Full changelog text with sections separated by 99 dashes
        version: Exact version string to look for
        source_url: Declared source repository; issue references are linked
            when it points to a known forge

    Returns:
        Formatted section, or an empty string when no section matches
    """
    if not changelog:
        return ""

    for section in changelog.replace("\r", "").split(SEPARATOR):
        section_version, lines = _split_header(section)
        if section_version != version:
            continue

        if lines and lines[0].strip().startswith("Date:"):
            lines = lines[1:]

        body = "\n".join(_format_line(line) for line in lines)
        body = body.replace("__", "\\_\\_")
        body = _BLANK_RUNS.sub("\n\n", body).strip("\n")

        issue_path = _issue_path(source_url)
        if issue_path:
            repo = source_url.rstrip("/")
            body = _ISSUE_REF.sub(lambda m: f"[#{m.group(1)}]({repo}{issue_path}{m.group(1)})", body)

        return truncate(body)

    return ""
