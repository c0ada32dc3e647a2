"""
Text search primitives used by the secret scanner.

RipgrepSearcher shells out to `rg`, RegexSearcher does the same work with
the re module when ripgrep is not installed.
"""

import base64
import json
import logging
import re
import shutil
import subprocess as sp
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from leakshield.core.constants import DEFAULT_TOOL_TIMEOUT
from leakshield.core.errors import ToolError
from leakshield.verticals.sweep.archives import is_binary, iter_archive_lines


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchMatch:
    """A match: the lines it spans and where it starts."""

    path: Path
    line_number: int
    text: str


class Searcher(Protocol):
    def search(
        self,
        pattern: str,
        target: Path,
        multiline: bool = False,
        max_count: Optional[int] = None,
    ) -> List[SearchMatch]:
        """
        Search target (a file or a directory, recursively) for pattern.

        max_count bounds the matches reported per file. Binary files are
        skipped.

        Raises:
            ToolError: the search could not run
        """
        ...


class RipgrepSearcher:
    """Runs ripgrep and parses its JSON output."""

    def __init__(self, timeout: float = DEFAULT_TOOL_TIMEOUT, binary: str = "rg"):
        self.timeout = timeout
        self.binary = binary

    def search(
        self,
        pattern: str,
        target: Path,
        multiline: bool = False,
        max_count: Optional[int] = None,
    ) -> List[SearchMatch]:
        args = [
            self.binary,
            "--json",
            "--no-config",
            # Packages ship .gitignore files that would hide their contents
            "--no-ignore",
            "--hidden",
        ]
        if multiline:
            args.append("--multiline")
        if max_count is not None:
            args.extend(["--max-count", str(max_count)])
        args.extend(["--regexp", pattern, "--", str(target)])

        try:
            result = sp.run(
                args,
                capture_output=True,
                timeout=self.timeout,
                stdin=sp.DEVNULL,
            )
        except sp.TimeoutExpired as e:
            raise ToolError(f"rg timed out after {self.timeout}s on {target}") from e
        except OSError as e:
            raise ToolError(f"Error running rg with args {args}: {e}") from e

        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        # 0: matches, 1: no match, 2: error (possibly alongside matches)
        if result.returncode not in (0, 1) and not result.stdout:
            raise ToolError(f"rg failed with exit code {result.returncode}: {stderr}")
        if stderr:
            logger.debug("rg stderr for %s: %s", target, stderr)

        return list(parse_ripgrep_json(result.stdout))


def _decode_rg_text(data: Dict[str, Any]) -> str:
    """rg reports non UTF-8 data as base64 under "bytes" instead of "text"."""
    if "text" in data:
        return data["text"]
    return base64.b64decode(data.get("bytes", "")).decode("utf-8", errors="replace")


def parse_ripgrep_json(output: bytes) -> Iterator[SearchMatch]:
    """Yield the "match" messages of `rg --json` output."""
    for raw_line in output.splitlines():
        try:
            message = json.loads(raw_line)
        except ValueError:
            logger.debug("Ignoring non-JSON rg output: %r", raw_line[:200])
            continue
        if message.get("type") != "match":
            continue
        data = message["data"]
        yield SearchMatch(
            path=Path(_decode_rg_text(data["path"])),
            line_number=data["line_number"],
            text=_decode_rg_text(data["lines"]),
        )


class RegexSearcher:
    """Pure Python searcher with the same semantics as RipgrepSearcher."""

    def search(
        self,
        pattern: str,
        target: Path,
        multiline: bool = False,
        max_count: Optional[int] = None,
    ) -> List[SearchMatch]:
        regex = re.compile(pattern, re.MULTILINE)
        if target.is_file():
            paths = [target]
        else:
            paths = sorted(p for p in target.rglob("*") if p.is_file())

        matches: List[SearchMatch] = []
        for path in paths:
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.debug("Failed to read %s: %s", path, e)
                continue
            if is_binary(data):
                continue
            text = data.decode("utf-8", errors="replace")
            if multiline:
                found = _search_multiline(regex, text, path)
            else:
                found = _search_lines(regex, text, path)
            for count, match in enumerate(found):
                if max_count is not None and count >= max_count:
                    break
                matches.append(match)
        return matches


def _search_lines(regex: "re.Pattern[str]", text: str, path: Path) -> Iterator[SearchMatch]:
    for line_number, line in enumerate(text.splitlines(keepends=True), start=1):
        if regex.search(line):
            yield SearchMatch(path=path, line_number=line_number, text=line)


def _search_multiline(
    regex: "re.Pattern[str]", text: str, path: Path
) -> Iterator[SearchMatch]:
    """Yield each match expanded to the full lines it spans, like rg does."""
    for match in regex.finditer(text):
        start = text.rfind("\n", 0, match.start()) + 1
        end = text.find("\n", max(match.end() - 1, match.start()))
        end = len(text) if end == -1 else end + 1
        yield SearchMatch(
            path=path,
            line_number=text.count("\n", 0, match.start()) + 1,
            text=text[start:end],
        )


def search_archive(
    pattern: str, archive_path: Path, max_count: int = 1
) -> List[SearchMatch]:
    """
    Search the text inside an archive line by line without extracting it.

    Stops reading as soon as max_count matches are found. Match paths are
    member paths inside the archive.

    Raises:
        ToolError: the archive cannot be read
    """
    regex = re.compile(pattern)
    matches: List[SearchMatch] = []
    lines = iter_archive_lines(archive_path)
    try:
        for member_path, line_number, line in lines:
            if regex.search(line):
                matches.append(
                    SearchMatch(path=Path(member_path), line_number=line_number, text=line)
                )
                if len(matches) >= max_count:
                    break
    finally:
        lines.close()
    return matches


def default_searcher(timeout: float = DEFAULT_TOOL_TIMEOUT) -> Searcher:
    """Use ripgrep when it is installed, the re module otherwise."""
    if shutil.which("rg"):
        return RipgrepSearcher(timeout=timeout)
    logger.debug("rg not found on PATH, falling back to RegexSearcher")
    return RegexSearcher()
