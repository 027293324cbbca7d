"""
Data Fetch Module
=================

Downloads the public Formula 1 CSV archive and unpacks it into the raw data
directory.

Functions:
    - missing_tables: List CSV files not yet present locally
    - download_dataset: Fetch and extract the zip archive
"""

import io
import logging
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .data_loader import TABLE_FILES, OPTIONAL_TABLES

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://ergast.com/downloads/f1db_csv.zip"

HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}


def missing_tables(
    data_dir: str,
    file_names: Optional[Dict[str, str]] = None
) -> List[str]:
    """Return the required CSV file names that are absent from data_dir."""
    files = dict(TABLE_FILES)
    if file_names:
        files.update(file_names)

    data_dir = Path(data_dir)
    return [
        file_name for name, file_name in files.items()
        if name not in OPTIONAL_TABLES and not (data_dir / file_name).exists()
    ]


def download_dataset(
    url: str = DEFAULT_URL,
    dest_dir: str = "data/raw",
    timeout: float = 60.0,
    overwrite: bool = False,
    file_names: Optional[Dict[str, str]] = None
) -> Path:
    """
    Download the zipped CSV dump and extract its CSV files into dest_dir.

    Members are flattened: a CSV stored under a folder inside the archive
    lands directly in dest_dir.

    Args:
        url: Location of the zip archive
        dest_dir: Directory to extract into
        timeout: Request timeout in seconds
        overwrite: Download even if all tables are already present
        file_names: Mapping of table name to file name

    Returns:
        Path to the directory containing the CSV files

    Raises:
        requests.RequestException: On network or HTTP errors
        ValueError: If the archive is not a zip or lacks required tables
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    if not overwrite and not missing_tables(str(dest_dir), file_names):
        logger.info(f"All tables already present in {dest_dir}, skipping download")
        return dest_dir

    logger.info(f"Downloading dataset from {url}")
    try:
        response = requests.get(url, headers=HEADERS, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Error downloading {url}: {e}")
        raise

    try:
        archive = zipfile.ZipFile(io.BytesIO(response.content))
    except zipfile.BadZipFile as e:
        raise ValueError(f"Response from {url} is not a zip archive") from e

    extracted = 0
    with archive:
        for member in archive.infolist():
            name = Path(member.filename).name
            if member.is_dir() or not name.endswith('.csv'):
                continue
            with archive.open(member) as src, open(dest_dir / name, 'wb') as dst:
                dst.write(src.read())
            extracted += 1

    logger.info(f"Extracted {extracted} CSV files to {dest_dir}")

    still_missing = missing_tables(str(dest_dir), file_names)
    if still_missing:
        raise ValueError(f"Archive from {url} did not contain: {still_missing}")

    return dest_dir
