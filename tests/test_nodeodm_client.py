import json

import pytest

from nodeodm_client import NodeODMClient, NodeODMError


class _Response:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.ok = 200 <= status_code < 300

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class _Session:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.response

    def get(self, url):
        self.requests.append(("GET", url, {}))
        return self.response


def test_urls_carry_token_and_params():
    client = NodeODMClient("http://odm:3000/", token="secret")

    assert client.download_url("abc") == "http://odm:3000/task/abc/download/all.zip?token=secret"
    assert client.url("/task/abc/output", {"line": 5}) == \
        "http://odm:3000/task/abc/output?token=secret&line=5"


def test_task_info_passes_with_output():
    session = _Session(_Response({"uuid": "abc", "status": {"code": 40}}))
    client = NodeODMClient("http://odm:3000", session=session)

    info = client.task_info("abc", with_output=10)

    assert info["uuid"] == "abc"
    method, url, _ = session.requests[0]
    assert method == "GET"
    assert url == "http://odm:3000/task/abc/info?with_output=10"


def test_restart_sends_json_options():
    session = _Session(_Response({"success": True}))
    client = NodeODMClient("http://odm:3000", session=session)

    client.restart_task("abc", options=[{"name": "fast-orthophoto", "value": True}])

    method, url, kwargs = session.requests[0]
    assert (method, url) == ("POST", "http://odm:3000/task/restart")
    assert kwargs["data"]["uuid"] == "abc"
    assert json.loads(kwargs["data"]["options"]) == [{"name": "fast-orthophoto", "value": True}]


def test_create_task_sends_images_as_multipart():
    session = _Session(_Response({"uuid": "new"}))
    client = NodeODMClient("http://odm:3000", session=session)

    result = client.create_task([("a.jpg", b"1"), ("b.jpg", b"2")], name="field",
                                skip_post_processing=True)

    _, url, kwargs = session.requests[0]
    assert result == {"uuid": "new"}
    assert url == "http://odm:3000/task/new"
    assert [f[0] for f in kwargs["files"]] == ["images", "images"]
    assert kwargs["data"] == {"name": "field", "skipPostProcessing": "true"}


def test_error_field_raises():
    client = NodeODMClient(session=_Session(_Response({"error": "Task not found"}, 404)))

    with pytest.raises(NodeODMError, match="Task not found") as excinfo:
        client.cancel_task("nope")

    assert excinfo.value.status == 404


def test_non_json_error_reports_status():
    client = NodeODMClient(session=_Session(_Response(ValueError("no json"), 502)))

    with pytest.raises(NodeODMError, match="HTTP 502"):
        client.task_list()


def test_download_returns_raw_response():
    response = _Response(None, 404)
    session = _Session(response)
    client = NodeODMClient("http://odm:3000", session=session)

    assert client.download("abc") is response
    assert session.requests[0][1] == "http://odm:3000/task/abc/download/all.zip"
