"""
Two-stage search for AWS credential pairs in downloaded packages.

The quick check streams the archive looking for anything shaped like an
access key ID. Only artifacts passing it are fully extracted and searched
for an access key ID and a secret key quoted within a few lines of each
other.
"""

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from leakshield.verticals.sweep.archives import extract
from leakshield.verticals.sweep.fetcher import DownloadedArtifact
from leakshield.verticals.sweep.registries import PackageReference
from leakshield.verticals.sweep.search import (
    Searcher,
    SearchMatch,
    default_searcher,
    search_archive,
)


logger = logging.getLogger(__name__)

ACCESS_KEY_PREFIXES = ("ASIA", "AKIA", "AROA", "AIDA")
_PREFIXES = "|".join(ACCESS_KEY_PREFIXES)

QUICK_CHECK_REGEX = rf"((?:{_PREFIXES})([A-Z0-7]{{16}}))"

# An access key followed by a secret key within 4 lines, or a secret key
# followed by an access key within 3 lines
FULL_CHECK_REGEX = (
    rf"(('|\")((?:{_PREFIXES})([A-Z0-7]{{16}}))('|\").*?(\n^.*?){{0,4}}"
    r"(('|\")[a-zA-Z0-9+/]{40}('|\"))+"
    r"|('|\")[a-zA-Z0-9+/]{40}('|\").*?(\n^.*?){0,3}"
    rf"('|\")((?:{_PREFIXES})([A-Z0-7]{{16}}))('|\"))+"
)

ACCESS_KEY_REGEX = re.compile(rf"(('|\")(?:{_PREFIXES})([A-Z0-7]{{16}})('|\"))")
SECRET_KEY_REGEX = re.compile(r"(('|\")([a-zA-Z0-9+/]{40})('|\"))")

# Characters of a quick check match shown in logs
MATCH_PREVIEW_LENGTH = 250


@dataclass(frozen=True)
class CredentialCandidate:
    """
    An unvalidated access key / secret key pair and where it was found.

    Two candidates are equal when they come from the same artifact and hold
    the same pair, wherever in the artifact they were found.
    """

    reference: PackageReference
    access_key: str
    secret_key: str
    file_path: str = field(compare=False)
    line_number: int = field(compare=False)


@dataclass
class PossibleMatch:
    """An artifact that passed the quick check."""

    artifact: DownloadedArtifact
    matches: List[SearchMatch]

    def preview(self) -> str:
        return "\n\n".join(m.text[:MATCH_PREVIEW_LENGTH] for m in self.matches)


def _strip_quotes(token: str) -> str:
    return token.strip("'\"")


def candidates_from_block(
    reference: PackageReference, text: str, file_path: str, line_number: int
) -> List[CredentialCandidate]:
    """
    Pair every access key in text with every secret key in text.

    A proximity window may hold several tokens of each kind, so the
    cartesian product is returned and live validation sorts out the rest.
    """
    access_keys = [_strip_quotes(m.group(0)) for m in ACCESS_KEY_REGEX.finditer(text)]
    secret_keys = [_strip_quotes(m.group(0)) for m in SECRET_KEY_REGEX.finditer(text)]
    return [
        CredentialCandidate(
            reference=reference,
            access_key=access_key,
            secret_key=secret_key,
            file_path=file_path,
            line_number=line_number,
        )
        for access_key, secret_key in itertools.product(
            dict.fromkeys(access_keys), dict.fromkeys(secret_keys)
        )
    ]


class SecretScanner:
    def __init__(self, searcher: Optional[Searcher] = None):
        self.searcher = searcher if searcher is not None else default_searcher()

    def quick_check(self, artifact: DownloadedArtifact) -> Optional[PossibleMatch]:
        """
        Search the archive without extracting it for an access key ID.

        Returns None when nothing looks like a key.

        Raises:
            ToolError: the archive cannot be read
        """
        matches = search_archive(
            QUICK_CHECK_REGEX, artifact.local_archive_path, max_count=1
        )
        if not matches:
            return None
        return PossibleMatch(artifact=artifact, matches=matches)

    def full_check(self, possible: PossibleMatch) -> List[CredentialCandidate]:
        """
        Extract the archive and return the candidate pairs found in it.

        Raises:
            ToolError: the archive cannot be extracted or searched
        """
        artifact = possible.artifact
        extract(artifact.local_archive_path, artifact.extract_dir)
        matches = self.searcher.search(
            FULL_CHECK_REGEX, artifact.extract_dir, multiline=True
        )

        candidates: List[CredentialCandidate] = []
        for match in matches:
            file_path = artifact.relative_path(match.path)
            candidates.extend(
                candidates_from_block(
                    artifact.reference, match.text, file_path, match.line_number
                )
            )
        logger.debug(
            "%s: %d matches, %d candidates",
            artifact.reference.describe(),
            len(matches),
            len(candidates),
        )
        return candidates

