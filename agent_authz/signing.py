"""
agent_authz.signing: who signs decision receipts and audit records.

Two backends satisfy the ``Signer`` protocol:

- ``FileEd25519Signer`` signs in process with a loaded ``Ed25519KeyPair``.
- ``ExternalCommandSigner`` hands every message to an operator-supplied
  command (HSM bridge, TPM tool, signing daemon) so the private key never
  enters the authorizer process.

External command contract: the message arrives on stdin as one base64 line;
the command writes the base64 Ed25519 signature to stdout and exits 0.

Signing happens after the ledger commit. A failing signer therefore never
loses a decision; the receipt is simply not issued and the failure is logged
by the caller.
"""

from __future__ import annotations

import base64
import binascii
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair

SIGNATURE_LEN = 64
DEFAULT_TIMEOUT_SECONDS = 2.0

_FILE_MODES = ("file", "inproc", "in-process", "software")
_EXTERNAL_MODES = ("external", "cmd", "command")


@runtime_checkable
class Signer(Protocol):
    @property
    def key_id(self) -> str: ...

    @property
    def public_key_bytes(self) -> bytes: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)

    def describe(self) -> Dict[str, Any]:
        return {"mode": "file", "key_id": self.key_id}


@dataclass
class ExternalCommandSigner:
    """Signs through an external command and checks the result.

    Every signature is verified against ``public_key_bytes`` before it is
    returned, so a misrouted HSM slot cannot produce receipts that name the
    wrong key.
    """

    key_id: str
    public_key_bytes: bytes
    signing_cmd: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.signing_cmd or not self.signing_cmd.strip():
            raise ValueError("external signer requires a signing command")
        self._argv = shlex.split(self.signing_cmd)
        self._verifier = Ed25519KeyPair.from_public_key(self.key_id, self.public_key_bytes.hex())

    def sign(self, message: bytes) -> bytes:
        line = base64.b64encode(bytes(message)) + b"\n"
        try:
            proc = subprocess.run(
                self._argv,
                input=line,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"external signer timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise RuntimeError(f"external signer could not start: {e}") from e
        if proc.returncode != 0:
            raise RuntimeError(f"external signer failed with exit code {proc.returncode}")
        try:
            signature = base64.b64decode(proc.stdout.strip(), validate=True)
        except (ValueError, binascii.Error) as e:
            raise RuntimeError("external signer returned invalid base64") from e
        if len(signature) != SIGNATURE_LEN:
            raise RuntimeError(f"external signer returned {len(signature)} bytes, expected {SIGNATURE_LEN}")
        if not self._verifier.verify(message, signature):
            raise RuntimeError(f"external signer output does not verify under key {self.key_id}")
        return signature

    def describe(self) -> Dict[str, Any]:
        return {"mode": "external", "key_id": self.key_id, "timeout_seconds": self.timeout_seconds}


def coerce_signer(obj: Any) -> Signer:
    """Accept a key pair or anything shaped like a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        return FileEd25519Signer(obj)
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


@dataclass(frozen=True)
class SignerSettings:
    mode: str = "file"
    command: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(
        cls,
        *,
        mode_env: str = "AUTHZ_SIGNER_MODE",
        cmd_env: str = "AUTHZ_SIGNER_CMD",
        timeout_env: str = "AUTHZ_SIGNER_TIMEOUT_SECONDS",
    ) -> "SignerSettings":
        mode = (os.getenv(mode_env) or "file").strip().lower()
        if mode in _FILE_MODES:
            return cls(mode="file")
        if mode not in _EXTERNAL_MODES:
            raise RuntimeError(f"Unsupported {mode_env}={mode!r}; expected file|external")

        command = (os.getenv(cmd_env) or "").strip()
        if not command:
            raise RuntimeError(f"{cmd_env} must be set when {mode_env}=external")
        raw_timeout = (os.getenv(timeout_env) or "").strip()
        timeout = DEFAULT_TIMEOUT_SECONDS
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise RuntimeError(f"{timeout_env} must be a number (seconds)") from None
            if timeout <= 0:
                raise RuntimeError(f"{timeout_env} must be positive")
        return cls(mode="external", command=command, timeout_seconds=timeout)


def build_signer_from_env(base_signer: Any, **env_names: str) -> Signer:
    """Pick the receipt/audit signer for this deployment.

    ``base_signer`` supplies the key id and public key. In external mode its
    private half, if any, is not used.
    """
    settings = SignerSettings.from_env(**env_names)
    base = coerce_signer(base_signer)
    if settings.mode == "file":
        return base
    return ExternalCommandSigner(
        key_id=base.key_id,
        public_key_bytes=base.public_key_bytes,
        signing_cmd=settings.command,
        timeout_seconds=settings.timeout_seconds,
    )
