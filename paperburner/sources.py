"""PDF file discovery and Google Drive upload."""

from __future__ import annotations

import logging
import mimetypes
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

log = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive.file"]


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


def discover_pdfs(inputs: Iterable[Path]) -> list[Path]:
    """Expand files and folders into a de-duplicated list of PDFs.

    Folders are searched recursively and sorted by name; explicit files
    keep their given order. Missing paths are logged and skipped.
    """
    found: list[Path] = []
    seen: set[Path] = set()
    for item in inputs:
        if item.is_dir():
            candidates = sorted(p for p in item.rglob("*") if p.suffix.lower() == ".pdf")
        elif item.is_file():
            if item.suffix.lower() != ".pdf":
                log.warning("Skipping non-PDF input: %s", item)
                continue
            candidates = [item]
        else:
            log.warning("Input not found: %s", item)
            continue
        for path in candidates:
            key = path.resolve()
            if key not in seen:
                seen.add(key)
                found.append(path)
    return found


# ---------------------------------------------------------------------------
# Google Drive API
# ---------------------------------------------------------------------------


@dataclass
class DriveUploadResult:
    success: bool
    file_name: str
    file_id: Optional[str] = None
    web_link: Optional[str] = None
    error: Optional[str] = None


def authenticate_drive(credentials_file: Path, token_file: Path):
    """OAuth2 authentication with token caching."""
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow

    creds = None
    if token_file.exists():
        creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        else:
            if not credentials_file.exists():
                log.error(
                    "Credentials file not found: %s\n"
                    "  1. Go to Google Cloud Console -> APIs & Services -> Credentials\n"
                    "  2. Create OAuth 2.0 Client ID (Desktop app)\n"
                    "  3. Download JSON and pass it with --credentials",
                    credentials_file,
                )
                sys.exit(1)
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_file), SCOPES)
            creds = flow.run_local_server(port=0)
        token_file.parent.mkdir(parents=True, exist_ok=True)
        token_file.write_text(creds.to_json())
    return creds


def build_drive_service(credentials_file: Path, token_file: Path):
    from googleapiclient.discovery import build

    creds = authenticate_drive(credentials_file, token_file)
    return build("drive", "v3", credentials=creds)


def upload_to_drive(service, path: Path, folder_id: Optional[str] = None) -> DriveUploadResult:
    """Upload one local file; API errors are captured in the result."""
    from googleapiclient.errors import HttpError
    from googleapiclient.http import MediaFileUpload

    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    metadata: dict = {"name": path.name}
    if folder_id:
        metadata["parents"] = [folder_id]

    try:
        media = MediaFileUpload(str(path), mimetype=mime_type, resumable=True)
        created = (
            service.files()
            .create(body=metadata, media_body=media, fields="id, webViewLink")
            .execute()
        )
    except (HttpError, OSError) as exc:
        log.error("Drive upload failed for %s: %s", path.name, exc)
        return DriveUploadResult(False, path.name, error=str(exc))

    log.info("  Uploaded to Drive: %s (%s)", path.name, created.get("id"))
    return DriveUploadResult(
        True,
        path.name,
        file_id=created.get("id"),
        web_link=created.get("webViewLink"),
    )
