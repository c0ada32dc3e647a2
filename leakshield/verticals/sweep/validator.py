"""
Live validation of candidate credential pairs against AWS STS.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from leakshield.core.constants import DEFAULT_HTTP_TIMEOUT, DEFAULT_REGION
from leakshield.core.errors import IdentityCheckError
from leakshield.verticals.sweep.scanner import CredentialCandidate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    arn: str

    @property
    def label(self) -> str:
        return identity_label_from_arn(self.arn)


def identity_label_from_arn(arn: str) -> str:
    """
    Return the part of arn naming the principal, without partition and account.

    >>> identity_label_from_arn("arn:aws:iam::123456789012:user/deploy")
    'user/deploy'
    """
    return arn.split(":")[-1]


class IdentityChecker(Protocol):
    def who_am_i(self, access_key: str, secret_key: str) -> Identity:
        """
        Raises:
            IdentityCheckError: the pair is invalid, expired or the call failed
        """
        ...


class StsIdentityChecker:
    """Calls sts:GetCallerIdentity with an explicit key pair."""

    def __init__(self, region: str = DEFAULT_REGION, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.region = region
        self.client_config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1},
        )

    def who_am_i(self, access_key: str, secret_key: str) -> Identity:
        client = boto3.client(
            "sts",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=self.region,
            config=self.client_config,
        )
        try:
            response = client.get_caller_identity()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise IdentityCheckError(f"STS rejected {access_key}: {code}") from e
        except BotoCoreError as e:
            raise IdentityCheckError(f"STS call failed for {access_key}: {e}") from e
        return Identity(arn=response["Arn"])


@dataclass(frozen=True)
class LiveCredential:
    """A candidate the identity endpoint accepted."""

    candidate: CredentialCandidate
    identity_label: str


class CredentialValidator:
    """
    Checks candidates one at a time on a dedicated worker thread.

    Use as a context manager around a run: the worker is started on entry
    and shut down on exit.
    """

    def __init__(self, checker: Optional[IdentityChecker] = None):
        self.checker = checker if checker is not None else StsIdentityChecker()
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self) -> "CredentialValidator":
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="validate")
        return self

    def __exit__(self, *args: Any) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def validate(self, candidates: Sequence[CredentialCandidate]) -> List[LiveCredential]:
        """Return the candidates that are live, in the order they were given."""
        if self._executor is None:
            raise RuntimeError("CredentialValidator must be entered before use")
        return self._executor.submit(self._validate_all, list(candidates)).result()

    def _validate_all(self, candidates: List[CredentialCandidate]) -> List[LiveCredential]:
        live: List[LiveCredential] = []
        for candidate in candidates:
            try:
                identity = self.checker.who_am_i(candidate.access_key, candidate.secret_key)
            except IdentityCheckError as e:
                logger.debug(
                    "Discarding candidate from %s: %s", candidate.reference.describe(), e
                )
                continue
            logger.info(
                "Live key %s in %s (%s)",
                candidate.access_key,
                candidate.reference.describe(),
                identity.label,
            )
            live.append(LiveCredential(candidate=candidate, identity_label=identity.label))
        return live
