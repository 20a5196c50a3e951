import json
import time
from pathlib import Path
from typing import Any

import requests

BASE = "https://www.googleapis.com/drive/v3"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

FILE_FIELDS = (
    "id,name,mimeType,size,createdTime,modifiedTime,"
    "owners(displayName,emailAddress),videoMediaMetadata(width,height,durationMillis)"
)
CHANGE_FILE_FIELDS = (
    "id,name,mimeType,parents,trashed,size,createdTime,modifiedTime,"
    "owners(displayName,emailAddress),videoMediaMetadata(width,height,durationMillis)"
)


def _error_text(res: requests.Response) -> str:
    return (res.text or "").strip()[:500]


class DriveClient:
    def __init__(
        self,
        access_token: str = "",
        token_file: str = "",
        client_id: str = "",
        client_secret: str = "",
        timeout: int = 30,
    ):
        self.access_token = access_token or ""
        self.token_file = token_file or ""
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.timeout = timeout

    def _load_tokens(self) -> dict[str, Any] | None:
        if not self.token_file:
            return None
        p = Path(self.token_file).expanduser()
        if not p.exists():
            return None
        payload = json.loads(p.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            return payload
        return None

    def _save_tokens(self, data: dict[str, Any]) -> None:
        if not self.token_file:
            return
        p = Path(self.token_file).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def _refresh_tokens(self, tokens: dict[str, Any]) -> dict[str, Any] | None:
        refresh = str(tokens.get("refresh_token") or "").strip()
        if not refresh or not self.client_id or not self.client_secret:
            return None

        res = requests.post(
            OAUTH_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=self.timeout,
        )
        if res.status_code >= 400:
            return None
        payload_raw = res.json()
        payload = payload_raw if isinstance(payload_raw, dict) else {}
        if not payload.get("access_token"):
            return None

        # Google omits refresh_token on refresh; keep the stored one.
        refreshed = {**tokens, **payload}
        refreshed["refresh_token"] = payload.get("refresh_token") or refresh
        refreshed["created_at"] = int(time.time() * 1000)
        self._save_tokens(refreshed)
        return refreshed

    def get_access_token(self) -> str | None:
        if self.access_token:
            return self.access_token

        tokens = self._load_tokens()
        if not tokens:
            return None

        access_token_raw = tokens.get("access_token")
        access_token = access_token_raw if isinstance(access_token_raw, str) and access_token_raw else None
        created = int(tokens.get("created_at", 0) or 0)
        expires_in = int(tokens.get("expires_in", 3600) or 3600)

        expire_at = created + max(expires_in - 300, 300) * 1000
        if access_token and (not created or int(time.time() * 1000) < expire_at):
            return access_token

        refreshed = self._refresh_tokens(tokens)
        if not refreshed:
            return access_token
        return refreshed.get("access_token")

    def _auth_headers(self) -> dict[str, str]:
        token = self.get_access_token()
        if not token:
            raise RuntimeError("no_token")
        return {"Authorization": f"Bearer {token}"}

    def get_start_page_token(self) -> str:
        headers = self._auth_headers()
        res = requests.get(f"{BASE}/changes/startPageToken", headers=headers, timeout=self.timeout)
        if res.status_code >= 400:
            raise RuntimeError(f"start_page_token_failed_status_{res.status_code}: {_error_text(res)}")
        payload_raw = res.json()
        payload = payload_raw if isinstance(payload_raw, dict) else {}
        token = payload.get("startPageToken")
        if not isinstance(token, str) or not token:
            raise RuntimeError("start_page_token_missing")
        return token

    def get_file_meta(self, file_id: str, fields: str = FILE_FIELDS) -> dict[str, Any]:
        headers = self._auth_headers()
        res = requests.get(
            f"{BASE}/files/{file_id}",
            params={"fields": fields, "supportsAllDrives": "true"},
            headers=headers,
            timeout=self.timeout,
        )
        if res.status_code >= 400:
            raise RuntimeError(f"drive_meta_failed_status_{res.status_code}: {_error_text(res)}")
        payload_raw = res.json()
        if not isinstance(payload_raw, dict) or not payload_raw.get("id"):
            raise RuntimeError("drive_meta_invalid_response")
        return payload_raw

    def list_children(
        self,
        folder_id: str,
        page_token: str | None = None,
        fields: str = FILE_FIELDS,
    ) -> dict[str, Any]:
        headers = self._auth_headers()
        params: dict[str, str] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": f"files({fields}),nextPageToken",
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        if page_token:
            params["pageToken"] = page_token

        res = requests.get(f"{BASE}/files", params=params, headers=headers, timeout=self.timeout)
        if res.status_code >= 400:
            return {"ok": False, "status": res.status_code, "error": _error_text(res)}
        body_raw = res.json()
        body = body_raw if isinstance(body_raw, dict) else {}
        files_raw = body.get("files", []) or []
        files = [item for item in files_raw if isinstance(item, dict)] if isinstance(files_raw, list) else []
        next_page_token = body.get("nextPageToken")
        return {
            "ok": True,
            "files": files,
            "next_page_token": str(next_page_token) if next_page_token else None,
        }

    def list_children_once(self, folder_id: str, fields: str = FILE_FIELDS) -> list[dict[str, Any]]:
        page_token: str | None = None
        items: list[dict[str, Any]] = []
        while True:
            res = self.list_children(folder_id, page_token=page_token, fields=fields)
            if not res.get("ok"):
                raise RuntimeError(f"list_children_failed: status={res.get('status')} {res.get('error')}")
            items.extend(res.get("files", []))
            page_token = res.get("next_page_token")
            if not page_token:
                break
        return items

    def list_changes(self, page_token: str, page_size: int = 1000) -> dict[str, Any]:
        """Fetch one page of the changes feed.

        Non-success responses and transport failures come back as
        ``{"ok": False, ...}`` so pollers can stop early and keep their cursor.
        A missing token still raises, since that is a configuration problem.
        """
        headers = self._auth_headers()
        params: dict[str, str | int] = {
            "pageToken": page_token,
            "pageSize": page_size,
            "fields": f"nextPageToken,newStartPageToken,changes(fileId,removed,file({CHANGE_FILE_FIELDS}))",
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        try:
            res = requests.get(f"{BASE}/changes", params=params, headers=headers, timeout=self.timeout)
            if res.status_code >= 400:
                return {"ok": False, "status": res.status_code, "error": _error_text(res)}
            body_raw = res.json()
        except (requests.RequestException, ValueError) as e:
            return {"ok": False, "status": None, "error": str(e)}

        body = body_raw if isinstance(body_raw, dict) else {}
        changes_raw = body.get("changes", []) or []
        changes = [c for c in changes_raw if isinstance(c, dict)] if isinstance(changes_raw, list) else []
        return {
            "ok": True,
            "changes": changes,
            "next_page_token": body.get("nextPageToken") or None,
            "new_start_page_token": body.get("newStartPageToken") or None,
        }
