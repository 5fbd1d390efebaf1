"""Shared fixtures: an in-memory fake device and roster/candidate builders."""

import base64
import json
from urllib.parse import parse_qs, urlparse

import cv2
import numpy as np
import pytest
import requests

from enrollment_sync.device_client import DeviceClient, DeviceClientConfig
from enrollment_sync.registry_cache import DeviceRegistry
from enrollment_sync.schemas import EnrollmentCandidate, Identity, IdentityKind
from enrollment_sync.schemas.roster_schemas import ProcessedPhoto


class FakeResponse:
    def __init__(self, text="", status_code=200, content=None, json_data=None):
        self.text = text
        self.status_code = status_code
        self.content = content if content is not None else text.encode("utf-8")
        self._json = json_data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeDevice:
    """
    Stands in for requests.Session against one device.

    `ghost_ids` are accepted by AccessUser insertMulti but never persisted,
    which is what the verification step exists to catch.
    """

    def __init__(self, enrolled=None, ghost_ids=(), offline=False):
        self.users = {}
        self.faces = {}
        self._next_rec = 1
        for user_id in enrolled or []:
            self._add(str(user_id), f"Existing {user_id}")
        self.ghost_ids = set(ghost_ids)
        self.offline = offline
        self.reject_users = False
        self.reject_faces = False
        self.calls = []
        self.headers = {}

    def _add(self, user_id, name):
        self.users[user_id] = {"RecNo": str(self._next_rec), "CardName": name}
        self._next_rec += 1

    def request(self, method, url, **kwargs):
        parsed = urlparse(url)
        endpoint = parsed.path.rsplit("/", 1)[-1]
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        body = json.loads(kwargs["data"]) if kwargs.get("data") else None
        self.calls.append({"method": method, "endpoint": endpoint, "query": query, "body": body, "kwargs": kwargs})

        if self.offline:
            raise requests.exceptions.ConnectionError("device unreachable")

        if endpoint == "recordFinder.cgi":
            lines = [f"found={len(self.users)}"]
            for i, (user_id, rec) in enumerate(self.users.items()):
                lines.append(f"records[{i}].RecNo={rec['RecNo']}")
                lines.append(f"records[{i}].UserID={user_id}")
                lines.append(f"records[{i}].CardName={rec['CardName']}")
            return FakeResponse("\r\n".join(lines) + "\r\n")

        if endpoint == "recordUpdater.cgi":
            for user_id, rec in list(self.users.items()):
                if rec["RecNo"] == query.get("RecNo"):
                    del self.users[user_id]
                    self.faces.pop(user_id, None)
                    return FakeResponse("OK\r\n")
            return FakeResponse("Error\r\n")

        if endpoint == "AccessUser.cgi":
            if self.reject_users:
                return FakeResponse("Error\r\n")
            for user in body["UserList"]:
                if user["UserID"] not in self.ghost_ids:
                    self._add(user["UserID"], user["UserName"])
            return FakeResponse("OK\r\n")

        if endpoint == "AccessFace.cgi":
            if self.reject_faces:
                return FakeResponse("Error\r\n")
            for face in body["FaceList"]:
                self.faces[face["UserID"]] = face["PhotoData"][0]
            return FakeResponse("OK\r\n")

        return FakeResponse("Not Found", status_code=404)

    def calls_to(self, endpoint):
        return [c for c in self.calls if c["endpoint"] == endpoint]

    def close(self):
        pass


def make_identity(i, kind=IdentityKind.PRIMARY, invite_id=None, **overrides) -> Identity:
    data = {
        "identity_id": f"user-{i}",
        "invite_id": invite_id or f"invite-{i}",
        "display_name": f"Person Number {i}",
        "email": f"person{i}@example.com",
        "kind": kind,
        "photo_url": f"https://photos.example.com/{i}.jpg",
    }
    data.update(overrides)
    return Identity(**data)


def make_candidate(i, **overrides) -> EnrollmentCandidate:
    photo = ProcessedPhoto(
        data_b64=base64.b64encode(f"jpeg-{i}".encode()).decode(),
        size_bytes=6,
        width=100,
        height=120,
        quality=90,
    )
    return EnrollmentCandidate(
        identity=make_identity(i, **overrides),
        photo=photo,
        device_name=f"Person {i}",
    )


def jpeg_bytes(width=640, height=480, seed=0) -> bytes:
    """A smooth gradient photo with light noise, JPEG encoded."""
    rng = np.random.default_rng(seed)
    x = np.linspace(0, 255, width, dtype=np.float32)
    y = np.linspace(0, 255, height, dtype=np.float32)[:, None]
    base = (x[None, :] * 0.6 + y * 0.4)
    image = np.stack([base, base[::-1], np.flip(base, axis=1)], axis=-1)
    image += rng.normal(0, 4, image.shape)
    image = np.clip(image, 0, 255).astype(np.uint8)
    ok, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, 95])
    assert ok
    return encoded.tobytes()


@pytest.fixture
def device_config():
    return DeviceClientConfig(username="admin", password="secret")


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def client_for(device_config):
    """Build a DeviceClient bound to a FakeDevice."""
    def _build(device: FakeDevice, address="10.0.0.21"):
        return DeviceClient(address, device_config, session=device)
    return _build


@pytest.fixture
def registry(tmp_path):
    return DeviceRegistry(tmp_path / "registry")
