"""
Content-addressed storage for encrypted record blobs.

Three backends share the same put/get contract:

- MemoryContentStore: in-process, computes real CIDv1 identifiers
- IPFSContentStore: talks to the IPFS (Kubo) HTTP RPC API with requests
- IPFSClientContentStore: uses ipfshttpclient against a multiaddr

There is no delete and no mutation. Stores never retry internally; callers
wrap get() with healthchain.retry.call_with_retry.
"""

import base64
import hashlib
import logging
import threading

import ipfshttpclient
import requests

from healthchain.constants import REQUEST_TIMEOUT
from healthchain.errors import NotFoundError, UnavailableError, ValidationError

logger = logging.getLogger(__name__)

# multiformats prefixes for CIDv1 / raw codec / sha2-256 multihash
CID_VERSION = 0x01
RAW_CODEC = 0x55
SHA2_256 = 0x12
DIGEST_LENGTH = 0x20


def compute_cid(data: bytes) -> str:
    """Compute the CIDv1 (raw, sha2-256, base32) of a byte string"""
    digest = hashlib.sha256(data).digest()
    raw = bytes([CID_VERSION, RAW_CODEC, SHA2_256, DIGEST_LENGTH]) + digest
    return "b" + base64.b32encode(raw).decode('ascii').lower().rstrip("=")


def clean_cid(cid):
    """Clean a CID by removing whitespace and an optional /ipfs/ prefix"""
    if not isinstance(cid, str) or not cid.strip():
        raise ValidationError("CID must be a non-empty string")
    cleaned = cid.strip()
    if cleaned.startswith("/ipfs/"):
        cleaned = cleaned[len("/ipfs/"):]
    return cleaned


def _ensure_bytes(data):
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    if not isinstance(data, bytes):
        raise ValidationError(f"Content must be bytes, got {type(data).__name__}")
    return data


class ContentStore:
    """Interface of a content-addressed blob store"""

    def put(self, data: bytes) -> str:
        raise NotImplementedError

    def get(self, cid: str) -> bytes:
        raise NotImplementedError


class MemoryContentStore(ContentStore):
    """Content store held in memory, for tests and local development"""

    def __init__(self):
        self._blobs = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        data = _ensure_bytes(data)
        cid = compute_cid(data)
        with self._lock:
            self._blobs.setdefault(cid, data)
        logger.debug(f"Stored {len(data)} bytes in memory with CID: {cid}")
        return cid

    def get(self, cid: str) -> bytes:
        cid = clean_cid(cid)
        with self._lock:
            data = self._blobs.get(cid)
        if data is None:
            raise NotFoundError(f"CID {cid} not found")
        return data

    def __len__(self):
        return len(self._blobs)


class IPFSContentStore(ContentStore):
    """Content store backed by the IPFS HTTP RPC API"""

    def __init__(self, api_url="http://127.0.0.1:5001/api/v0", timeout=REQUEST_TIMEOUT, session=None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _call(self, endpoint, params=None, files=None):
        url = f"{self.api_url}/{endpoint}"
        try:
            response = self.http.post(url, params=params, files=files, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"IPFS API unreachable at {url}: {e}")
            raise UnavailableError(f"IPFS API unreachable: {e.__class__.__name__}")
        except requests.RequestException as e:
            logger.error(f"IPFS API request to {url} failed: {e}")
            raise UnavailableError(f"IPFS API request failed: {e.__class__.__name__}")
        return response

    def put(self, data: bytes) -> str:
        data = _ensure_bytes(data)
        response = self._call(
            "add",
            params={"pin": "true", "cid-version": "1", "raw-leaves": "true"},
            files={"file": ("record.enc", data)},
        )
        if response.status_code != 200:
            logger.error(f"Error adding to IPFS: {response.status_code} - {response.text}")
            raise UnavailableError(f"IPFS add failed with HTTP {response.status_code}")
        try:
            cid = response.json()["Hash"]
        except (ValueError, KeyError):
            raise UnavailableError("IPFS add returned an unexpected response")
        logger.info(f"Stored {len(data)} bytes on IPFS with CID: {cid}")
        return cid

    def get(self, cid: str) -> bytes:
        cid = clean_cid(cid)
        response = self._call("cat", params={"arg": cid})
        if response.status_code == 200:
            return response.content
        if response.status_code == 500 and _looks_missing(response.text):
            raise NotFoundError(f"CID {cid} not found")
        if response.status_code in (400, 404):
            raise NotFoundError(f"CID {cid} not found")
        logger.error(f"Error retrieving {cid} from IPFS: {response.status_code} - {response.text}")
        raise UnavailableError(f"IPFS cat failed with HTTP {response.status_code}")


class IPFSClientContentStore(ContentStore):
    """Content store backed by an ipfshttpclient connection"""

    def __init__(self, addr="/ip4/127.0.0.1/tcp/5001", timeout=REQUEST_TIMEOUT, client=None):
        self.addr = addr
        self.timeout = timeout
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = ipfshttpclient.connect(self.addr, timeout=self.timeout)
            except ipfshttpclient.exceptions.Error as e:
                logger.error(f"Could not connect to IPFS at {self.addr}: {e}")
                raise UnavailableError(f"Could not connect to IPFS at {self.addr}")
        return self._client

    def put(self, data: bytes) -> str:
        data = _ensure_bytes(data)
        try:
            cid = self.client.add_bytes(data)
        except (ipfshttpclient.exceptions.CommunicationError, ipfshttpclient.exceptions.StatusError) as e:
            logger.error(f"Error adding to IPFS: {e}")
            raise UnavailableError(f"IPFS add failed: {e.__class__.__name__}")
        logger.info(f"Stored {len(data)} bytes on IPFS with CID: {cid}")
        return cid

    def get(self, cid: str) -> bytes:
        cid = clean_cid(cid)
        try:
            return self.client.cat(cid)
        except ipfshttpclient.exceptions.ErrorResponse as e:
            if _looks_missing(str(e)):
                raise NotFoundError(f"CID {cid} not found")
            raise UnavailableError(f"IPFS cat failed: {e}")
        except (ipfshttpclient.exceptions.CommunicationError, ipfshttpclient.exceptions.StatusError) as e:
            logger.error(f"Error retrieving {cid} from IPFS: {e}")
            raise UnavailableError(f"IPFS cat failed: {e.__class__.__name__}")


def _looks_missing(message):
    message = (message or "").lower()
    return any(hint in message for hint in ("not found", "invalid cid", "invalid path", "failed to decode"))


def create_content_store(url):
    """
    Build a content store from a URL.

    memory:// -> MemoryContentStore, http(s)://... -> IPFSContentStore,
    anything starting with "/" (a multiaddr) -> IPFSClientContentStore.
    """
    if url.startswith("memory://"):
        return MemoryContentStore()
    if url.startswith("http://") or url.startswith("https://"):
        return IPFSContentStore(url)
    if url.startswith("/"):
        return IPFSClientContentStore(url)
    raise ValidationError(f"Unsupported content store URL: {url}")
