import xmlrpc.client
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest
import requests

from leakshield.core.errors import UpstreamProtocolError
from leakshield.verticals.sweep.registries import RegistryType
from leakshield.verticals.sweep.registries.base import PollContext
from leakshield.verticals.sweep.registries.pypi import (
    PyPiCursor,
    parse_changelog_row,
)
from tests.unit.conftest import make_response


TIMESTAMP = 1700000000

PKG_A_SDIST = "https://files.pythonhosted.org/packages/aa/pkgA-1.0.0.tar.gz"
PKG_A_WHEEL = "https://files.pythonhosted.org/packages/bb/pkgA-1.0.0-py3-none-any.whl"
PKG_B_WHEEL = "https://files.pythonhosted.org/packages/cc/pkgB-0.1-py3-none-any.whl"

CHANGELOG = [
    ["pkgA", "1.0.0", TIMESTAMP, "add source file pkgA-1.0.0.tar.gz", 101],
    ["gone", "2.0", TIMESTAMP + 1, "add py3 file gone-2.0-py3-none-any.whl", 102],
    ["tensorflow", "2.0", TIMESTAMP + 2, "add cp39 file tensorflow-2.0-cp39.whl", 103],
    ["pkgB", None, TIMESTAMP + 3, "create", 104],
    ["pkgB", "0.1", TIMESTAMP + 4, "add py3 file pkgB-0.1-py3-none-any.whl", 105],
]

METADATA = {
    "https://pypi.org/pypi/pkgA/1.0.0/json": {
        "urls": [
            {"filename": "pkgA-1.0.0.tar.gz", "url": PKG_A_SDIST},
            {"filename": "pkgA-1.0.0-py3-none-any.whl", "url": PKG_A_WHEEL},
        ]
    },
    "https://pypi.org/pypi/pkgB/0.1/json": {
        "urls": [{"filename": "pkgB-0.1-py3-none-any.whl", "url": PKG_B_WHEEL}]
    },
}


def changelog_response(rows: List[List[Any]]) -> MagicMock:
    content = xmlrpc.client.dumps((rows,), methodresponse=True, allow_none=True)
    return make_response(content=content.encode("utf-8"))


def make_session(
    rows: List[List[Any]], metadata: Dict[str, Any] = METADATA, status: int = 404
) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.post.return_value = changelog_response(rows)

    def get(url: str, **kwargs: Any) -> MagicMock:
        if url in metadata:
            return make_response(json_data=metadata[url], url=url)
        return make_response(status_code=status, url=url)

    session.get.side_effect = get
    return session


def poll_context(session: MagicMock) -> PollContext:
    return PollContext(session=session, timeout=5, max_workers=2)


class TestParseChangelogRow:
    def test_parse_row(self):
        entry = parse_changelog_row(CHANGELOG[0])

        assert entry.name == "pkgA"
        assert entry.serial == 101
        assert entry.file_name == "pkgA-1.0.0.tar.gz"
        assert entry.is_candidate(set())

    @pytest.mark.parametrize(
        "row",
        [
            pytest.param(["pkgA", "1.0"], id="too-short"),
            pytest.param(["pkgA", "1.0", "yesterday", "add", 1], id="bad-timestamp"),
            pytest.param("pkgA", id="not-a-list"),
        ],
    )
    def test_malformed_row(self, row: Any):
        with pytest.raises(UpstreamProtocolError):
            parse_changelog_row(row)

    def test_exe_and_denylisted_rows_are_not_candidates(self):
        exe = parse_changelog_row(["pkg", "1.0", TIMESTAMP, "add py3 file pkg-1.0.exe", 1])
        denied = parse_changelog_row(CHANGELOG[2])

        assert not exe.is_candidate(set())
        assert not denied.is_candidate({"tensorflow"})


class TestPyPiCursor:
    def test_state_round_trip(self):
        """
        GIVEN a persisted PyPI cursor
        WHEN rebuilding the cursor from it
        THEN the same position is restored
        """
        state = {
            "changelog_serial": 105,
            "last_package_timestamp": "2023-11-14T22:13:24Z",
            "stats": {"packages_searched": 12},
        }

        cursor = PyPiCursor.from_state(state)

        assert cursor.serial == 105
        assert cursor.stats.packages_searched == 12
        assert cursor.to_state() == state

    def test_poll_resolves_files_named_in_changelog(self):
        """
        GIVEN a changelog adding files to pkgA, a deleted release and a denylisted package
        WHEN polling
        THEN only the added files of the surviving releases are referenced
        AND the cursor moves to the last serial seen
        """
        session = make_session(CHANGELOG)

        result = PyPiCursor(serial=100).poll(poll_context(session), limit=10)

        assert [r.download_url for r in result.references] == [PKG_A_SDIST, PKG_B_WHEEL]
        assert all(r.registry == RegistryType.PYPI for r in result.references)
        assert result.cursor.serial == 105
        # One metadata request per release, none for the denylisted package
        requested = sorted(call.args[0] for call in session.get.call_args_list)
        assert requested == [
            "https://pypi.org/pypi/gone/2.0/json",
            "https://pypi.org/pypi/pkgA/1.0.0/json",
            "https://pypi.org/pypi/pkgB/0.1/json",
        ]

    def test_metadata_not_found_still_advances(self):
        """
        GIVEN a changelog whose only release answers 404 to its metadata lookup
        WHEN polling
        THEN no reference is produced
        AND the cursor still moves past the changelog entry
        """
        session = make_session([CHANGELOG[1]])

        result = PyPiCursor(serial=100).poll(poll_context(session), limit=10)

        assert result.references == []
        assert result.cursor.serial == 102

    def test_metadata_server_error_fails_poll(self):
        """
        GIVEN a metadata lookup answering 500
        WHEN polling
        THEN the poll fails
        """
        session = make_session([CHANGELOG[1]], status=500)

        with pytest.raises(requests.HTTPError):
            PyPiCursor(serial=100).poll(poll_context(session), limit=10)

    def test_limit_stops_scanning(self):
        """
        GIVEN more candidate rows than the limit
        WHEN polling
        THEN the cursor stops at the last row scanned
        """
        session = make_session(CHANGELOG)

        result = PyPiCursor(serial=100).poll(poll_context(session), limit=1)

        assert [r.download_url for r in result.references] == [PKG_A_SDIST]
        assert result.cursor.serial == 101

    def test_poll_converges(self):
        """
        GIVEN an unchanged changelog
        WHEN polling again with the returned cursor
        THEN nothing new is found and the cursor does not move
        """
        session = make_session(CHANGELOG)
        ctx = poll_context(session)

        first = PyPiCursor(serial=100).poll(ctx, limit=10)
        second = first.cursor.poll(ctx, limit=10)

        assert second.references == []
        assert second.cursor == first.cursor

    def test_paged_polls_are_monotonic(self):
        """
        GIVEN a changelog read with a small limit
        WHEN polling repeatedly
        THEN the serial never decreases and every file is eventually seen
        """
        session = make_session(CHANGELOG)
        ctx = poll_context(session)
        cursor = PyPiCursor(serial=100)
        seen = []
        for _ in range(5):
            result = cursor.poll(ctx, limit=1)
            assert result.cursor.serial >= cursor.serial
            seen.extend(r.download_url for r in result.references)
            cursor = result.cursor

        assert seen == [PKG_A_SDIST, PKG_B_WHEEL]
        assert cursor.serial == 105

    def test_changelog_fault_is_protocol_error(self):
        """
        GIVEN the XML-RPC endpoint answering with a fault
        WHEN polling
        THEN UpstreamProtocolError is raised
        """
        session = MagicMock(spec=requests.Session)
        fault = xmlrpc.client.dumps(xmlrpc.client.Fault(1, "boom"), methodresponse=True)
        session.post.return_value = make_response(content=fault.encode("utf-8"))

        with pytest.raises(UpstreamProtocolError):
            PyPiCursor(serial=100).poll(poll_context(session), limit=10)
