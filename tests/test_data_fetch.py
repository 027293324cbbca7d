"""
Test Suite for Data Fetch Module
=================================

The network is never touched: requests.get is replaced by a fake.
"""

import io
import zipfile

import pytest
import requests

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from f1_report import data_fetch
from f1_report.data_fetch import download_dataset, missing_tables
from f1_report.data_loader import TABLE_FILES


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


def make_archive(data_dir: Path, skip=()) -> bytes:
    """Zip the CSV files under a folder, the way the public dump is packed."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        archive.writestr('f1db_csv/', '')
        for name, file_name in TABLE_FILES.items():
            if name not in skip:
                archive.write(data_dir / file_name, f"f1db_csv/{file_name}")
        archive.writestr('f1db_csv/README.txt', 'not a table')
    return buffer.getvalue()


class TestMissingTables:
    """Tests for missing_tables."""

    def test_empty_dir(self, tmp_path):
        missing = missing_tables(str(tmp_path))
        assert 'races.csv' in missing
        assert 'status.csv' not in missing

    def test_complete_dir(self, data_dir):
        assert missing_tables(str(data_dir)) == []


class TestDownloadDataset:
    """Tests for download_dataset."""

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def fake_get(self, monkeypatch, calls):
        def install(response):
            def get(url, headers=None, timeout=None):
                calls.append(url)
                return response
            monkeypatch.setattr(data_fetch.requests, 'get', get)
        return install

    def test_extracts_flattened_csvs(self, data_dir, tmp_path, fake_get, calls):
        fake_get(FakeResponse(make_archive(data_dir)))

        dest = download_dataset(url="http://example.test/f1.zip", dest_dir=str(tmp_path / "raw"))

        assert calls == ["http://example.test/f1.zip"]
        for file_name in TABLE_FILES.values():
            assert (dest / file_name).exists()
        assert not (dest / 'README.txt').exists()

    def test_skips_when_present(self, data_dir, fake_get, calls):
        fake_get(FakeResponse(b''))

        dest = download_dataset(dest_dir=str(data_dir))

        assert dest == data_dir
        assert calls == []

    def test_overwrite_forces_download(self, data_dir, tmp_path, fake_get, calls):
        dest_dir = tmp_path / "raw"
        dest_dir.mkdir()
        for file_name in TABLE_FILES.values():
            (dest_dir / file_name).write_bytes((data_dir / file_name).read_bytes())
        fake_get(FakeResponse(make_archive(data_dir)))

        download_dataset(dest_dir=str(dest_dir), overwrite=True)

        assert len(calls) == 1

    def test_http_error_propagates(self, tmp_path, fake_get):
        fake_get(FakeResponse(b'', status_code=404))
        with pytest.raises(requests.HTTPError):
            download_dataset(dest_dir=str(tmp_path))

    def test_not_a_zip(self, tmp_path, fake_get):
        fake_get(FakeResponse(b'<html>maintenance</html>'))
        with pytest.raises(ValueError, match="not a zip"):
            download_dataset(dest_dir=str(tmp_path))

    def test_incomplete_archive(self, data_dir, tmp_path, fake_get):
        fake_get(FakeResponse(make_archive(data_dir, skip=('pit_stops',))))
        with pytest.raises(ValueError, match="pit_stops.csv"):
            download_dataset(dest_dir=str(tmp_path))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
