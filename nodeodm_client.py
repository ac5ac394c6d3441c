"""
nodeodm_client.py — Minimal client for the NodeODM task HTTP API.

Only the calls the extraction service and its operators need are wrapped:
server info, task listing/status/output, task creation, the
cancel/remove/restart lifecycle, and result downloads.  Authentication uses
NodeODM's ``?token=`` query parameter.
"""

import json
import logging
from urllib.parse import urlencode

import requests

DEFAULT_NODEODM_URL = "http://localhost:3001"

logger = logging.getLogger("nodeodm_client")


class NodeODMError(Exception):
    """A NodeODM JSON endpoint answered with an error."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NodeODMClient:
    """Thin wrapper around a NodeODM node.

    Parameters
    ----------
    base_url : str
        Node root, e.g. ``http://localhost:3001``.  A trailing slash is dropped.
    token : str or None
        Optional access token appended to every request.
    session : requests.Session or None
        Injected session (tests pass a fake one).
    """

    def __init__(self, base_url: str = DEFAULT_NODEODM_URL, token: str | None = None,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()

    def url(self, path: str, params: dict | None = None) -> str:
        query = {}
        if self.token:
            query["token"] = self.token
        if params:
            query.update({k: str(v) for k, v in params.items()})
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            url += "?" + urlencode(query)
        return url

    def _request(self, method: str, path: str, params: dict | None = None, **kwargs):
        response = self.session.request(method, self.url(path, params), **kwargs)
        if not response.ok:
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise NodeODMError(message or f"HTTP {response.status_code}", response.status_code)
        data = response.json()
        # NodeODM reports some failures as 200 + {"error": ...}
        if isinstance(data, dict) and data.get("error"):
            raise NodeODMError(data["error"], response.status_code)
        return data

    # ── Server ──

    def info(self) -> dict:
        return self._request("GET", "/info")

    def options(self) -> list:
        return self._request("GET", "/options")

    # ── Tasks ──

    def task_list(self) -> list[dict]:
        return self._request("GET", "/task/list")

    def task_info(self, uuid: str, with_output: int | None = None) -> dict:
        params = {"with_output": with_output} if with_output is not None else None
        return self._request("GET", f"/task/{uuid}/info", params)

    def task_output(self, uuid: str, line: int = 0) -> list[str]:
        return self._request("GET", f"/task/{uuid}/output", {"line": line})

    def create_task(self, files: list, name: str | None = None, options: list | None = None,
                    webhook: str | None = None, skip_post_processing: bool | None = None,
                    outputs: list | None = None) -> dict:
        """Upload images and start a new task.

        *files* is a list of ``(filename, fileobj)`` pairs sent as ``images``.
        """
        form = {}
        if name:
            form["name"] = name
        if options:
            form["options"] = json.dumps(options)
        if webhook:
            form["webhook"] = webhook
        if skip_post_processing is not None:
            form["skipPostProcessing"] = "true" if skip_post_processing else "false"
        if outputs:
            form["outputs"] = json.dumps(outputs)
        multipart = [("images", (fname, fobj)) for fname, fobj in files]
        return self._request("POST", "/task/new", data=form, files=multipart)

    def cancel_task(self, uuid: str) -> dict:
        return self._request("POST", "/task/cancel", data={"uuid": uuid})

    def remove_task(self, uuid: str) -> dict:
        return self._request("POST", "/task/remove", data={"uuid": uuid})

    def restart_task(self, uuid: str, options: list | None = None) -> dict:
        form = {"uuid": uuid}
        if options is not None:
            form["options"] = json.dumps(options)
        return self._request("POST", "/task/restart", data=form)

    # ── Downloads ──

    def download_url(self, uuid: str, asset: str = "all.zip") -> str:
        return self.url(f"/task/{uuid}/download/{asset}")

    def download(self, uuid: str, asset: str = "all.zip") -> requests.Response:
        """Fetch a task asset in one GET and return the raw response.

        Status handling is left to the caller so it can report the code.
        """
        logger.info("Downloading %s from %s/task/%s/download/%s",
                    asset, self.base_url, uuid, asset)
        return self.session.get(self.download_url(uuid, asset))
