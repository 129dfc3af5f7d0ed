import hashlib
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import boto3
import paramiko
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


DEFAULT_KEY_PATH = Path.home() / ".mcdrop" / "keys" / "mcdrop-key.pem"
KEY_NAME = "mcdrop-key"


class TransportError(RuntimeError):
    """The remote shell could not be reached or the channel broke mid-command."""


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SSHClient:
    def __init__(self, host: str, key_path: str, username: str = "root",
                 timeout: int = 10, on_debug=None):
        self.host = host
        self.key_path = key_path
        self.username = username
        self.timeout = timeout
        self.on_debug = on_debug
        self._client: paramiko.SSHClient | None = None

    def connect(self) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host, username=self.username,
                key_filename=str(self.key_path), timeout=self.timeout,
                banner_timeout=30,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            if self.on_debug:
                self.on_debug(f"SSH connect to {self.host} failed: {type(e).__name__}: {e}")
            raise TransportError(f"Could not connect to {self.host}: {e}") from e
        self._client = client
        if self.on_debug:
            self.on_debug(f"SSH connected to {self.host}")

    def run(self, command: str) -> CommandResult:
        if not self._client:
            raise RuntimeError("Not connected. Call connect() first.")
        if self.on_debug:
            self.on_debug(f"$ {command}")
        try:
            _, stdout, stderr = self._client.exec_command(command)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"Command failed on {self.host}: {command}: {e}") from e
        if self.on_debug:
            combined = (out + err).strip()
            self.on_debug(f"  exit={exit_code}" + (f"\n  {combined}" if combined else ""))
        return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RemoteExecutor:
    """Runs shell commands on the instance as the privileged account.

    ``address`` is a callable so the executor always targets the address the
    controller currently holds. Calls without a session open and close their
    own connection; a session handed in by the caller is never closed here.
    """

    def __init__(self, address: Callable[[], str | None], key_path,
                 username: str = "root", on_output=None, on_debug=None):
        self._address = address
        self.key_path = key_path
        self.username = username
        self.on_output = on_output
        self.on_debug = on_debug

    def open_session(self) -> SSHClient:
        host = self._address()
        if not host:
            raise TransportError("No address to connect to; the instance is not reachable")
        client = SSHClient(
            host=host, key_path=self.key_path, username=self.username,
            on_debug=self.on_debug,
        )
        client.connect()
        return client

    @contextmanager
    def session(self) -> Iterator[SSHClient]:
        client = self.open_session()
        try:
            yield client
        finally:
            client.close()

    def exec(self, command: str, session: SSHClient | None = None,
             log_output: bool = False) -> CommandResult:
        owned = session is None
        if owned:
            session = self.open_session()
        try:
            result = session.run(command)
        finally:
            if owned:
                session.close()
        if log_output and self.on_output:
            self.on_output(f"Command: {command} (exit={result.exit_code})")
            if result.stdout.strip():
                self.on_output(result.stdout.rstrip())
            if result.stderr.strip():
                self.on_output(result.stderr.rstrip())
        return result


def _compute_fingerprint(key_path: Path) -> str:
    """Compute the MD5 fingerprint AWS uses for imported key pairs."""
    key = paramiko.RSAKey.from_private_key_file(str(key_path))
    pub_der = key.key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    digest = hashlib.md5(pub_der).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def _get_public_key_from_private(key_path: Path) -> bytes:
    key = paramiko.RSAKey.from_private_key_file(str(key_path))
    return f"{key.get_name()} {key.get_base64()}".encode()


def ensure_local_key(key_path: Path) -> Path:
    """Generate a 4096-bit RSA key at ``key_path`` unless one is already there."""
    key_path = Path(key_path)
    if key_path.exists():
        return key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = paramiko.RSAKey.generate(4096)
    key.write_private_key_file(str(key_path))
    key_path.chmod(0o600)
    return key_path


def ensure_key_pair(region: str, key_path: Path = DEFAULT_KEY_PATH,
                    key_name: str = KEY_NAME, on_debug=None) -> Path:
    """Make the EC2 key pair ``key_name`` match the local private key."""
    _dbg = on_debug or (lambda _: None)
    key_path = ensure_local_key(key_path)

    local_fp = _compute_fingerprint(key_path)
    _dbg(f"SSH key: local fingerprint {local_fp}")
    ec2 = boto3.client("ec2", region_name=region)
    try:
        existing = ec2.describe_key_pairs(KeyNames=[key_name])
        remote_fp = existing["KeyPairs"][0]["KeyFingerprint"]
        if remote_fp == local_fp:
            _dbg(f"SSH key: EC2 key pair '{key_name}' matches in {region}")
            return key_path
        _dbg(f"SSH key: EC2 fingerprint mismatch (remote={remote_fp}), re-importing")
        ec2.delete_key_pair(KeyName=key_name)
    except ClientError as e:
        if e.response["Error"]["Code"] != "InvalidKeyPair.NotFound":
            raise
        _dbg(f"SSH key: no existing EC2 key pair '{key_name}' in {region}, importing")
    ec2.import_key_pair(KeyName=key_name, PublicKeyMaterial=_get_public_key_from_private(key_path))
    _dbg(f"SSH key: imported '{key_name}' to {region}")
    return key_path
