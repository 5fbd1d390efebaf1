"""
Device API client for facial access-control terminals.

Handles all communication with one device over HTTP digest auth:
- Listing enrolled AccessControlCard records
- Removing a record by RecNo
- Bulk identity creation (AccessUser insertMulti)
- Bulk face creation (AccessFace insertMulti)

Device replies are plain text; a call succeeds only when the trimmed reply is
exactly "OK". Transport retries are handled by the session's retry policy, not
by callers.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPDigestAuth
from urllib3.util.retry import Retry

from .schemas.device_schemas import BulkResult, DeviceRecord
from .schemas.roster_schemas import EnrollmentCandidate

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10
DEFAULT_USER_NAME = "Usuario"

_RECORD_LINE = re.compile(r"^records\[(\d+)\]\.([^=]+)=(.*)$")
_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class DeviceClientConfig:
    """Configuration shared by every device client in a run."""
    username: str = ""
    password: str = ""

    # Connection settings
    scheme: str = "http"
    timeout_seconds: int = 30
    user_agent: str = "enrollment-sync/1.0.0"

    # Retry settings
    max_retries: int = 3
    retry_backoff: float = 0.5
    status_forcelist: Tuple[int, ...] = (429, 500, 502, 503, 504)

    # Record finder page size
    find_count: int = 4300

    # Enrollment defaults
    valid_from: str = "2024-01-01 00:00:00"
    valid_to: str = "2037-12-31 23:59:59"
    user_type: int = 0
    authority: int = 1
    doors: List[int] = field(default_factory=lambda: [0])
    time_sections: List[int] = field(default_factory=lambda: [255])


class BatchTooLargeError(ValueError):
    """Raised when a bulk call is given more than MAX_BATCH_SIZE identities."""


def parse_record_finder_response(text: str) -> List[DeviceRecord]:
    """
    Parse a recordFinder reply into DeviceRecords.

    Grammar, one assignment per line:

        records[<index>].<Field>=<value>

    Lines that do not match are ignored. Fields are grouped by index and the
    records are returned in index order. Records without a UserID are
    dropped, since nothing can be reconciled against them.
    """
    grouped: Dict[int, Dict[str, str]] = {}
    for line in text.splitlines():
        match = _RECORD_LINE.match(line.strip())
        if not match:
            continue
        index, field_name, value = match.groups()
        grouped.setdefault(int(index), {})[field_name.strip()] = value.strip()

    records = []
    for index in sorted(grouped):
        fields = grouped[index]
        user_id = fields.get("UserID")
        if not user_id:
            logger.debug(f"Skipping record {index} without UserID: {fields}")
            continue
        records.append(DeviceRecord(
            remote_record_id=fields.get("RecNo") or None,
            identity_id=user_id,
            display_name=fields.get("CardName"),
        ))
    return records


def clean_device_name(name: Optional[str], max_length: int = 50) -> str:
    """Truncate and strip punctuation the device rejects in UserName."""
    cleaned = _NON_WORD.sub("", (name or "")[:max_length]).strip()
    return cleaned or DEFAULT_USER_NAME


class DeviceClient:
    """
    Client for one facial access-control device.

    Usage:
        client = DeviceClient("10.0.0.21", config)
        records = client.list_enrolled()
        client.create_identities(candidates[:10])
    """

    def __init__(
        self,
        address: str,
        config: DeviceClientConfig,
        session: Optional[requests.Session] = None,
    ):
        self.address = address
        self.config = config
        self._session = session or self._create_session()

        self.stats = {
            "requests": 0,
            "transport_errors": 0,
            "protocol_errors": 0,
        }

    def _create_session(self) -> requests.Session:
        """Create requests session with retry logic."""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.config.max_retries,
            backoff_factor=self.config.retry_backoff,
            status_forcelist=list(self.config.status_forcelist),
            allowed_methods=["GET", "POST"],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({"User-Agent": self.config.user_agent})
        return session

    def _url(self, path: str) -> str:
        return f"{self.config.scheme}://{self.address}/cgi-bin/{path}"

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> requests.Response:
        # Fresh auth object per call so the digest nonce is never shared
        # between threads.
        auth = HTTPDigestAuth(self.config.username, self.config.password)
        kwargs = {"auth": auth, "timeout": self.config.timeout_seconds}
        if payload is not None:
            kwargs["data"] = json.dumps(payload)
            kwargs["headers"] = {"Content-Type": "application/json"}

        self.stats["requests"] += 1
        response = self._session.request(method, self._url(path), **kwargs)
        response.raise_for_status()
        return response

    def close(self) -> None:
        self._session.close()

    # =========================================================================
    # Operations
    # =========================================================================

    def list_enrolled(self) -> List[DeviceRecord]:
        """
        Fetch every AccessControlCard record on the device.

        Returns an empty list on transport failure so reconciliation proceeds
        as if nothing were enrolled.
        """
        path = f"recordFinder.cgi?action=doSeekFind&name=AccessControlCard&count={self.config.find_count}"
        try:
            response = self._request("GET", path)
        except requests.exceptions.RequestException as e:
            self.stats["transport_errors"] += 1
            logger.error(f"Failed to list enrolled users on {self.address}: {e}")
            return []

        records = parse_record_finder_response(response.text)
        logger.debug(f"{self.address} reports {len(records)} enrolled records")
        return records

    def delete_record(self, remote_record_id: str) -> bool:
        """Remove one record by RecNo. True iff the device replied OK."""
        path = f"recordUpdater.cgi?action=remove&name=AccessControlCard&RecNo={remote_record_id}"
        try:
            response = self._request("GET", path)
        except requests.exceptions.RequestException as e:
            self.stats["transport_errors"] += 1
            logger.warning(f"Delete RecNo={remote_record_id} on {self.address} failed: {e}")
            return False

        reply = response.text.strip()
        if reply != "OK":
            self.stats["protocol_errors"] += 1
            logger.warning(f"Delete RecNo={remote_record_id} on {self.address} rejected: {reply!r}")
            return False
        return True

    def create_identities(self, batch: Sequence[EnrollmentCandidate]) -> BulkResult:
        """Bulk-create access users for up to MAX_BATCH_SIZE candidates."""
        self._check_batch(batch)
        user_list = [self._user_entry(c) for c in batch]
        return self._bulk_insert("AccessUser.cgi?action=insertMulti", {"UserList": user_list}, batch)

    def create_faces(self, batch: Sequence[EnrollmentCandidate]) -> BulkResult:
        """Bulk-create face templates, keyed by the same UserID as the identities."""
        self._check_batch(batch)
        face_list = [
            {"UserID": str(c.identity_id), "PhotoData": [c.photo.data_b64]}
            for c in batch
        ]
        return self._bulk_insert("AccessFace.cgi?action=insertMulti", {"FaceList": face_list}, batch)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _check_batch(batch: Sequence[EnrollmentCandidate]) -> None:
        if len(batch) > MAX_BATCH_SIZE:
            raise BatchTooLargeError(f"Batch of {len(batch)} exceeds device limit of {MAX_BATCH_SIZE}")

    def _user_entry(self, candidate: EnrollmentCandidate) -> Dict:
        return {
            "UserID": str(candidate.identity_id),
            "UserName": clean_device_name(candidate.device_name),
            "UserType": self.config.user_type,
            "Authority": self.config.authority,
            "Doors": list(self.config.doors),
            "TimeSections": list(self.config.time_sections),
            "ValidFrom": self.config.valid_from,
            "ValidTo": self.config.valid_to,
        }

    def _bulk_insert(self, path: str, payload: Dict, batch: Sequence[EnrollmentCandidate]) -> BulkResult:
        ids = [c.identity_id for c in batch]
        result = BulkResult(requested=len(batch), identity_ids=ids)
        if not batch:
            result.success = True
            return result

        try:
            response = self._request("POST", path, payload)
        except requests.exceptions.HTTPError as e:
            self.stats["transport_errors"] += 1
            body = e.response.text.strip() if e.response is not None else ""
            result.error = f"HTTP {e.response.status_code if e.response is not None else '?'}: {body[:200]}"
            logger.error(f"{path} on {self.address} failed: {result.error}")
            return result
        except requests.exceptions.RequestException as e:
            self.stats["transport_errors"] += 1
            result.error = str(e)
            logger.error(f"{path} on {self.address} failed: {e}")
            return result

        result.response = response.text.strip()
        if result.response == "OK":
            result.success = True
            result.success_count = len(batch)
        else:
            self.stats["protocol_errors"] += 1
            logger.warning(f"{path} on {self.address} rejected {len(batch)} users: {result.response!r}")
        return result
