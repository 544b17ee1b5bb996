"""Operation catalog: the closed set of typed parameter variants.

Every operation the core understands has exactly one parameter model: a
frozen pydantic model with `extra="forbid"` and strict types, so anything
outside the declared shape (wrong type, out of range, pattern mismatch,
unexpected parameter) is rejected at normalization time rather than flowing
through as untyped data.

The catalog also records, per operation, how the generic attributes the
evaluators rely on are derived: the coarse `effect`, which parameter names
the touched resource, which one names an outbound destination, and the
default tool identity.

Deployments can extend the catalog at runtime from JSON declarations; a
declaration compiles into a new parameter model with the same guarantees.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, create_model

from .models import Effect

Sensitivity = Literal["public", "internal", "confidential", "restricted"]

_IDENT = r"^[A-Za-z_][A-Za-z0-9_.]{0,127}$"
_EMAIL = r"^[A-Za-z0-9._%+\-]{1,64}@[A-Za-z0-9.\-]{1,253}\.[A-Za-z]{2,63}$"
_URL = r"^https?://[^\s/$.?#][^\s]{0,2047}$"
_MESSAGE_ID = r"^[A-Za-z0-9._:<>@+\-]{1,256}$"
_OPERATION_NAME = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


class OperationParams(BaseModel):
    """Base for every typed parameter variant."""

    model_config = ConfigDict(frozen=True, extra="forbid", strict=True)


class ReadEmailParams(OperationParams):
    message_id: str = Field(pattern=_MESSAGE_ID)
    folder: str = Field(default="inbox", min_length=1, max_length=128)
    sensitivity: Sensitivity = "internal"


class ListInboxParams(OperationParams):
    folder: str = Field(default="inbox", min_length=1, max_length=128)
    limit: int = Field(default=50, ge=1, le=500)
    unread_only: bool = False


class ReadAttachmentParams(OperationParams):
    attachment_id: str = Field(min_length=1, max_length=256)
    message_id: Optional[str] = Field(default=None, pattern=_MESSAGE_ID)
    sensitivity: Sensitivity = "internal"


class SendEmailParams(OperationParams):
    recipient: str = Field(pattern=_EMAIL)
    subject: str = Field(default="", max_length=998)
    body: str = Field(default="", max_length=1_000_000)
    attachments: Tuple[str, ...] = Field(default=(), max_length=20, strict=False)


class ReadFileParams(OperationParams):
    path: str = Field(min_length=1, max_length=4096)
    sensitivity: Sensitivity = "internal"


class WriteFileParams(OperationParams):
    path: str = Field(min_length=1, max_length=4096)
    content: str = Field(default="", max_length=10_000_000)
    append: bool = False


class DeleteFileParams(OperationParams):
    path: str = Field(min_length=1, max_length=4096)
    recursive: bool = False


class ReadRecordsParams(OperationParams):
    table: str = Field(pattern=_IDENT)
    filter: str = Field(default="", max_length=1024)
    limit: int = Field(default=100, ge=1, le=10_000)
    sensitivity: Sensitivity = "internal"


class UpdateRecordsParams(OperationParams):
    table: str = Field(pattern=_IDENT)
    filter: str = Field(min_length=1, max_length=1024)
    values: Dict[str, Optional[str | int | float | bool]] = Field(min_length=1, max_length=256)
    dry_run: bool = False


class DeleteRecordsParams(OperationParams):
    filter: str = Field(min_length=1, max_length=1024)
    table: Optional[str] = Field(default=None, pattern=_IDENT)
    limit: Optional[int] = Field(default=None, ge=1, le=1_000_000)
    dry_run: bool = False


class DropDatabaseParams(OperationParams):
    target: str = Field(pattern=r"^[A-Za-z0-9_.\-]{1,128}$")


class HttpRequestParams(OperationParams):
    url: str = Field(pattern=_URL)
    method: Literal["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    body: Optional[str] = Field(default=None, max_length=1_000_000)


class ExecuteCommandParams(OperationParams):
    command: str = Field(min_length=1, max_length=8192)
    cwd: Optional[str] = Field(default=None, max_length=4096)
    dry_run: bool = False


@dataclass(frozen=True)
class OperationSpec:
    name: str
    effect: Effect
    params_model: Type[OperationParams]
    default_tool: str
    resource_param: Optional[str] = None
    destination_param: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    description: str = ""

    def resource_of(self, params: OperationParams) -> Optional[str]:
        return _str_attr(params, self.resource_param)

    def destination_of(self, params: OperationParams) -> Optional[str]:
        return _str_attr(params, self.destination_param)

    @staticmethod
    def sensitivity_of(params: OperationParams) -> str:
        return str(getattr(params, "sensitivity", "internal") or "internal")


def _str_attr(params: OperationParams, name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = getattr(params, name, None)
    return None if value is None else str(value)


BUILTIN_OPERATIONS: Tuple[OperationSpec, ...] = (
    OperationSpec("read_email", Effect.READ, ReadEmailParams, "email", resource_param="message_id",
                  aliases=("email.read", "get_email")),
    OperationSpec("list_inbox", Effect.READ, ListInboxParams, "email", resource_param="folder",
                  aliases=("email.list", "list_emails")),
    OperationSpec("read_attachment", Effect.READ, ReadAttachmentParams, "email", resource_param="attachment_id",
                  aliases=("email.read_attachment", "get_attachment")),
    OperationSpec("send_email", Effect.SEND, SendEmailParams, "email", destination_param="recipient",
                  aliases=("email.send", "send_mail")),
    OperationSpec("read_file", Effect.READ, ReadFileParams, "filesystem", resource_param="path",
                  aliases=("fs.read", "cat")),
    OperationSpec("write_file", Effect.WRITE, WriteFileParams, "filesystem", resource_param="path",
                  aliases=("fs.write",)),
    OperationSpec("delete_file", Effect.DELETE, DeleteFileParams, "filesystem", resource_param="path",
                  aliases=("fs.delete", "rm", "unlink")),
    OperationSpec("read_records", Effect.READ, ReadRecordsParams, "database", resource_param="table",
                  aliases=("db.select", "query_records")),
    OperationSpec("update_records", Effect.WRITE, UpdateRecordsParams, "database", resource_param="table",
                  aliases=("db.update",)),
    OperationSpec("delete_records", Effect.DELETE, DeleteRecordsParams, "database", resource_param="table",
                  aliases=("db.delete",)),
    OperationSpec("drop_database", Effect.DELETE, DropDatabaseParams, "database", resource_param="target",
                  aliases=("db.drop",)),
    OperationSpec("http_request", Effect.SEND, HttpRequestParams, "http", destination_param="url",
                  aliases=("http.request", "fetch_url")),
    OperationSpec("execute_command", Effect.EXECUTE, ExecuteCommandParams, "shell", resource_param="cwd",
                  aliases=("shell.exec", "run_command")),
)


_DECLARED_TYPES: Dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
}


def _compile_declaration(decl: Mapping[str, Any]) -> OperationSpec:
    """Compile a JSON operation declaration into an OperationSpec.

    {"name": "archive_ticket", "effect": "write", "tool": "tickets",
     "params": {"ticket_id": {"type": "string", "required": true, "pattern": "^T-[0-9]+$"}},
     "resource_param": "ticket_id", "aliases": ["tickets.archive"]}
    """
    name = str(decl.get("name") or "")
    if not _OPERATION_NAME.match(name):
        raise ValueError(f"invalid operation name {name!r}")
    try:
        effect = Effect(str(decl.get("effect") or "").lower())
    except ValueError:
        raise ValueError(f"operation {name!r}: effect must be one of {[e.value for e in Effect]}")

    fields: Dict[str, Any] = {}
    params = decl.get("params") or {}
    if not isinstance(params, Mapping):
        raise ValueError(f"operation {name!r}: params must be an object")
    for pname, pdecl in params.items():
        if not isinstance(pdecl, Mapping):
            raise ValueError(f"operation {name!r}: parameter {pname!r} must be an object")
        ptype = _DECLARED_TYPES.get(str(pdecl.get("type", "string")))
        if ptype is None:
            raise ValueError(f"operation {name!r}: unsupported type for {pname!r}")
        if "enum" in pdecl:
            choices = tuple(pdecl["enum"])
            if not choices:
                raise ValueError(f"operation {name!r}: empty enum for {pname!r}")
            ptype = Literal[choices]  # type: ignore[valid-type]
        constraints: Dict[str, Any] = {}
        for key in ("ge", "le", "pattern", "max_length", "min_length"):
            if key in pdecl:
                constraints[key] = pdecl[key]
        if "pattern" in constraints:
            re.compile(str(constraints["pattern"]))
        if bool(pdecl.get("required", False)):
            fields[str(pname)] = (ptype, Field(**constraints))
        else:
            fields[str(pname)] = (Optional[ptype], Field(default=pdecl.get("default"), **constraints))

    for ref in ("resource_param", "destination_param"):
        if decl.get(ref) and decl[ref] not in fields:
            raise ValueError(f"operation {name!r}: {ref} {decl[ref]!r} is not a declared parameter")

    model = create_model(  # type: ignore[call-overload]
        "".join(part.capitalize() for part in name.split("_")) + "Params",
        __base__=OperationParams,
        **fields,
    )
    return OperationSpec(
        name=name,
        effect=effect,
        params_model=model,
        default_tool=str(decl.get("tool") or name.split("_", 1)[-1]),
        resource_param=decl.get("resource_param"),
        destination_param=decl.get("destination_param"),
        aliases=tuple(str(a) for a in decl.get("aliases", ()) or ()),
        description=str(decl.get("description") or ""),
    )


@dataclass
class OperationCatalog:
    """Registry of known operations and their aliases."""

    _specs: Dict[str, OperationSpec] = field(default_factory=dict)
    _aliases: Dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def default(cls) -> "OperationCatalog":
        catalog = cls()
        for spec in BUILTIN_OPERATIONS:
            catalog.register(spec)
        return catalog

    def register(self, spec: OperationSpec) -> OperationSpec:
        with self._lock:
            names = (spec.name,) + spec.aliases
            for n in names:
                key = n.lower()
                if key in self._specs or key in self._aliases:
                    raise ValueError(f"operation or alias {n!r} already registered")
            self._specs[spec.name] = spec
            for alias in spec.aliases:
                self._aliases[alias.lower()] = spec.name
        return spec

    def register_declaration(self, decl: Mapping[str, Any]) -> OperationSpec:
        return self.register(_compile_declaration(decl))

    def resolve(self, name: str) -> Optional[OperationSpec]:
        key = (name or "").strip().lower()
        spec = self._specs.get(key)
        if spec is not None:
            return spec
        canonical = self._aliases.get(key)
        return self._specs.get(canonical) if canonical else None

    def names(self) -> List[str]:
        return sorted(self._specs.keys())
