from __future__ import annotations

from drivemirror.providers.gdrive.drive_client import FOLDER_MIME_TYPE


def folder(file_id: str, name: str, parents: list[str] | None = None) -> dict:
    item = {"id": file_id, "name": name, "mimeType": FOLDER_MIME_TYPE}
    if parents is not None:
        item["parents"] = parents
    return item


def file(file_id: str, name: str, parents: list[str] | None = None, **extra) -> dict:
    item = {"id": file_id, "name": name, "mimeType": "text/plain", **extra}
    if parents is not None:
        item["parents"] = parents
    return item


class FakeDriveClient:
    """In-memory stand-in for DriveClient.

    ``change_pages`` maps a page token to a page dict (``changes``,
    ``next_page_token``, ``new_start_page_token``) or to an error page
    (``{"ok": False, ...}``).
    """

    def __init__(self, token: str | None = "tok"):
        self.token = token
        self.meta: dict[str, dict] = {}
        self.children: dict[str, list[dict]] = {}
        self.change_pages: dict[str, dict] = {}
        self.start_tokens: list[str] = ["start-1"]
        self.calls: list[tuple] = []
        self.list_errors: dict[str, Exception] = {}

    def get_access_token(self):
        return self.token

    def get_start_page_token(self) -> str:
        self.calls.append(("start_token",))
        if len(self.start_tokens) > 1:
            return self.start_tokens.pop(0)
        return self.start_tokens[0]

    def get_file_meta(self, file_id: str, fields: str = "") -> dict:
        self.calls.append(("meta", file_id))
        if file_id not in self.meta:
            raise RuntimeError(f"drive_meta_failed_status_404: {file_id}")
        return dict(self.meta[file_id])

    def list_children_once(self, folder_id: str, fields: str = "") -> list[dict]:
        self.calls.append(("list", folder_id))
        err = self.list_errors.get(folder_id)
        if err is not None:
            raise err
        return [dict(item) for item in self.children.get(folder_id, [])]

    def list_changes(self, page_token: str, page_size: int = 1000) -> dict:
        self.calls.append(("changes", page_token))
        page = self.change_pages.get(page_token)
        if page is None:
            return {"ok": True, "changes": [], "next_page_token": None, "new_start_page_token": page_token}
        if page.get("ok") is False:
            return page
        return {
            "ok": True,
            "changes": list(page.get("changes", [])),
            "next_page_token": page.get("next_page_token"),
            "new_start_page_token": page.get("new_start_page_token"),
        }


def sample_tree() -> FakeDriveClient:
    """Root "root" holding sub-folder "sub1" and file "f1"."""
    client = FakeDriveClient()
    client.meta["root"] = folder("root", "F")
    client.children["root"] = [
        folder("sub1", "sub", ["root"]),
        file("f1", "a.txt", ["root"], size="12", modifiedTime="2024-05-01T10:00:00.000Z"),
    ]
    client.children["sub1"] = []
    return client
