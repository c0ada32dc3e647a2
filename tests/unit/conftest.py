import io
import json
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from unittest.mock import MagicMock

import pytest
import requests
from click.testing import CliRunner, Result

from leakshield.verticals.sweep.registries import PackageReference, RegistryType


AWS_ACCESS_KEY = "AKIA0000000000000001"
AWS_SECRET_KEY = "A" * 40
OTHER_ACCESS_KEY = "AKIA0000000000000002"
OTHER_SECRET_KEY = "B" * 40

# Access key followed by its secret three lines below
LEAKY_SOURCE = (
    f"ACCESS='{AWS_ACCESS_KEY}'\n"
    "REGION='us-east-1'\n"
    "BUCKET='data'\n"
    f"SECRET='{AWS_SECRET_KEY}'\n"
)

BENIGN_SOURCE = "def hello():\n    return 'world'\n"


def assert_invoke_ok(result: Result) -> None:
    assert_invoke_exited_with(result, 0)


def assert_invoke_exited_with(result: Result, exit_code: int) -> None:
    assert result.exit_code == exit_code, (result.output, result.exception)


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_fs_runner(cli_runner: CliRunner) -> Iterator[CliRunner]:
    with cli_runner.isolated_filesystem():
        yield cli_runner


def make_response(
    json_data: Any = None,
    status_code: int = 200,
    content: bytes = b"",
    url: str = "https://example.test",
) -> MagicMock:
    """A requests.Response stand-in, raise_for_status included."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.url = url
    response.content = content
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f"{status_code} Error for url: {url}", response=response
        )
    return response


def make_download_response(content: bytes, status_code: int = 200) -> MagicMock:
    """A streamed download response usable as a context manager."""
    response = make_response(status_code=status_code, content=content)
    response.__enter__.return_value = response
    response.__exit__.return_value = None
    response.iter_content.side_effect = lambda chunk_size=1: iter(
        [content[i : i + chunk_size] for i in range(0, len(content), chunk_size)]
    )
    return response


def make_reference(
    name: str = "pkgA",
    version: str = "1.0.0",
    registry: RegistryType = RegistryType.PYPI,
    download_url: Optional[str] = None,
) -> PackageReference:
    if download_url is None:
        download_url = (
            f"https://files.pythonhosted.org/packages/ab/cd/{name}-{version}.tar.gz"
        )
    return PackageReference(
        registry=registry, name=name, version=version, download_url=download_url
    )


def tar_bytes(files: Dict[str, bytes], mode: str = "w:gz") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def zip_bytes(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def write_archive(path: Path, files: Dict[str, bytes]) -> Path:
    """Write files into an archive whose format follows the suffix of path."""
    if path.name.endswith((".whl", ".zip", ".egg", ".jar")):
        path.write_bytes(zip_bytes(files))
    elif path.name.endswith((".tar.gz", ".tgz")):
        path.write_bytes(tar_bytes(files))
    else:
        path.write_bytes(tar_bytes(files, mode="w"))
    return path


def write_state(path: Path, sources: Dict[str, Any]) -> None:
    path.write_text(json.dumps({"sources": sources}))
