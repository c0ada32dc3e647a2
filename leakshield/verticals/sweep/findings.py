"""
Grouping live credentials into one finding per package artifact.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, urlparse

from leakshield.verticals.sweep.registries import PackageReference, RegistryType
from leakshield.verticals.sweep.validator import LiveCredential


INSPECTOR_URL = "https://inspector.pypi.io/project/{name}/{version}/{path}/{file}#line.{line}"


@dataclass
class Finding:
    """The live credentials found in one package artifact."""

    reference: PackageReference
    credentials: List[LiveCredential] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return self.reference.file_name

    def public_url(self, credential: LiveCredential) -> Optional[str]:
        """
        Link to the line holding credential, for registries with a source browser.
        """
        if self.reference.registry != RegistryType.PYPI:
            return None
        candidate = credential.candidate
        return INSPECTOR_URL.format(
            name=quote(self.reference.name),
            version=quote(self.reference.version),
            path=urlparse(self.reference.download_url).path.lstrip("/"),
            file=quote(candidate.file_path),
            line=candidate.line_number,
        )

    def to_dict(self) -> Dict:
        ref = self.reference
        return {
            "registry": ref.registry.value,
            "name": ref.name,
            "version": ref.version,
            "download_url": ref.download_url,
            "credentials": [
                {
                    "access_key": c.candidate.access_key,
                    "secret_key": c.candidate.secret_key,
                    "identity": c.identity_label,
                    "file_path": c.candidate.file_path,
                    "line_number": c.candidate.line_number,
                    "public_url": self.public_url(c),
                }
                for c in self.credentials
            ],
        }


class FindingAggregator:
    @staticmethod
    def aggregate(live: Iterable[LiveCredential]) -> List[Finding]:
        """
        Group credentials by package artifact, keeping the first occurrence of
        each (access key, secret key) pair within a group.

        Findings and their credentials keep the order they were first seen in.
        """
        findings: Dict[PackageReference, Finding] = {}
        seen: Dict[PackageReference, set] = {}
        for credential in live:
            reference = credential.candidate.reference
            finding = findings.get(reference)
            if finding is None:
                finding = findings[reference] = Finding(reference=reference)
                seen[reference] = set()
            pair: Tuple[str, str] = (
                credential.candidate.access_key,
                credential.candidate.secret_key,
            )
            if pair in seen[reference]:
                continue
            seen[reference].add(pair)
            finding.credentials.append(credential)
        return list(findings.values())
