"""Targeted edits of the daemon's YAML configuration document.

The document is patched as text so comments, ordering and every unrelated byte
survive. Each logical field owns one anchored pattern that matches both the
shipped placeholder and a value written by an earlier run, which makes every
patch re-applicable. A patch that matches nothing, matches more than once, or
leaves the document unparseable is an error.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from importlib import resources
from pathlib import Path, PureWindowsPath
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .errors import PatchNotApplied
from .lib.engine import ENGINE_NETWORKS, ENGINE_URIS
from .request import ContainerOs, Dps, Manual, ProvisioningSpec, RegistryCredential

logger = logging.getLogger(__name__)

# A YAML scalar in either quote style, as written by the template or by us.
_Q = r"""(?:"[^"\n]*"|'(?:[^'\n]|'')*')"""
# Optional comment marker between keys of a commented-out block.
_C = r"\s*#?\s*"


class Field(enum.Enum):
    PROVISIONING_MANUAL = "provisioning.manual"
    PROVISIONING_DPS = "provisioning.dps"
    AGENT_IMAGE = "agent.config.image"
    AGENT_AUTH = "agent.config.auth"
    HOSTNAME = "hostname"
    CONNECT = "connect"
    LISTEN = "listen"
    ENGINE = "moby_runtime"
    HOMEDIR = "homedir"


_PATTERNS: Dict[Field, re.Pattern[str]] = {
    Field.PROVISIONING_MANUAL: re.compile(
        rf"^(?:#[^\S\n]*)?provisioning:{_C}source:\s*{_Q}{_C}device_connection_string:\s*{_Q}[^\S\n]*\n?",
        re.MULTILINE,
    ),
    Field.PROVISIONING_DPS: re.compile(
        rf"^(?:#[^\S\n]*)?provisioning:{_C}source:\s*{_Q}{_C}global_endpoint:\s*{_Q}"
        rf"{_C}scope_id:\s*{_Q}{_C}registration_id:\s*{_Q}[^\S\n]*\n?",
        re.MULTILINE,
    ),
    Field.AGENT_IMAGE: re.compile(rf"image:[^\S\n]*{_Q}"),
    Field.AGENT_AUTH: re.compile(
        rf"auth:[^\S\n]*(?:\{{[^\S\n]*\}}|(?:\n[^\S\n]+(?:serveraddress|username|password):[^\S\n]*{_Q}){{3}})"
    ),
    Field.HOSTNAME: re.compile(rf"^hostname:[^\S\n]*{_Q}", re.MULTILINE),
    Field.CONNECT: re.compile(rf"^connect:\s*management_uri:\s*{_Q}\s*workload_uri:\s*{_Q}", re.MULTILINE),
    Field.LISTEN: re.compile(rf"^listen:\s*management_uri:\s*{_Q}\s*workload_uri:\s*{_Q}", re.MULTILINE),
    Field.ENGINE: re.compile(rf"^moby_runtime:\s*uri:\s*{_Q}(?:{_C}network:\s*{_Q})?", re.MULTILINE),
    Field.HOMEDIR: re.compile(rf"^homedir:[^\S\n]*{_Q}", re.MULTILINE),
}


def quote(value: str) -> str:
    """Render a YAML single-quoted scalar."""
    return "'" + value.replace("'", "''") + "'"


def _line_indent(text: str, pos: int) -> str:
    start = text.rfind("\n", 0, pos) + 1
    line = text[start:pos]
    return line[: len(line) - len(line.lstrip(" "))]


@dataclass(frozen=True)
class ConfigDocument:
    """Immutable text buffer of the config file."""

    text: str

    def _match(self, field: Field) -> Optional[re.Match[str]]:
        matches = list(_PATTERNS[field].finditer(self.text))
        if len(matches) > 1:
            raise PatchNotApplied(field.value, f"pattern matched {len(matches)} regions")
        return matches[0] if matches else None

    def has(self, field: Field) -> bool:
        return self._match(field) is not None

    def patch(self, field: Field, replacement_lines: Sequence[str]) -> "ConfigDocument":
        """Replace the single region owned by ``field``.

        Lines after the first are indented relative to the matched line.
        """

        m = self._match(field)
        if m is None:
            raise PatchNotApplied(field.value, "pattern did not match; unexpected config schema")

        indent = _line_indent(self.text, m.start())
        replacement = "\n".join([replacement_lines[0], *(indent + line for line in replacement_lines[1:])])
        if m.group(0).endswith("\n"):
            replacement += "\n"

        patched = ConfigDocument(self.text[: m.start()] + replacement + self.text[m.end():])
        patched.parse(field)
        logger.debug("Patched config field %s", field.value)
        return patched

    def remove(self, field: Field) -> "ConfigDocument":
        """Drop the region owned by ``field``; absence is fine."""

        m = self._match(field)
        if m is None:
            return self
        removed = ConfigDocument(self.text[: m.start()] + self.text[m.end():])
        removed.parse(field)
        return removed

    def parse(self, field: Optional[Field] = None) -> Dict[str, Any]:
        label = field.value if field else "document"
        try:
            data = yaml.safe_load(self.text)
        except yaml.YAMLError as e:
            raise PatchNotApplied(label, f"document is no longer valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise PatchNotApplied(label, "document is no longer a mapping")
        return data


@dataclass(frozen=True)
class Endpoints:
    management_uri: str
    workload_uri: str


def socket_endpoints(data_dir: Path) -> Endpoints:
    """Unix-domain socket URIs under the data dir (Windows container mode)."""

    root = PureWindowsPath(str(data_dir)).as_posix().lstrip("/")
    return Endpoints(
        management_uri=f"unix:///{root}/mgmt/sock",
        workload_uri=f"unix:///{root}/workload/sock",
    )


def http_endpoints(address: str) -> Endpoints:
    return Endpoints(management_uri=f"http://{address}:15580", workload_uri=f"http://{address}:15581")


@dataclass(frozen=True)
class EdgeConfig:
    """Typed set of field values; only fields that are set get patched."""

    provisioning: Optional[ProvisioningSpec] = None
    credential: Optional[RegistryCredential] = None
    hostname: Optional[str] = None
    connect: Optional[Endpoints] = None
    listen: Optional[Endpoints] = None
    container_os: Optional[ContainerOs] = None
    homedir: Optional[str] = None

    def patches(self) -> List[Tuple[Field, Optional[List[str]]]]:
        """(field, lines) pairs; ``None`` lines mean the region is removed."""

        out: List[Tuple[Field, Optional[List[str]]]] = []
        p = self.provisioning
        if isinstance(p, Manual):
            out.append(
                (
                    Field.PROVISIONING_MANUAL,
                    ["provisioning:", "  source: 'manual'", f"  device_connection_string: {quote(p.connection_string)}"],
                )
            )
        elif isinstance(p, Dps):
            out.append(
                (
                    Field.PROVISIONING_DPS,
                    [
                        "provisioning:",
                        "  source: 'dps'",
                        f"  global_endpoint: {quote(p.global_endpoint)}",
                        f"  scope_id: {quote(p.scope_id)}",
                        f"  registration_id: {quote(p.registration_id)}",
                    ],
                )
            )
            out.append((Field.PROVISIONING_MANUAL, None))

        cred = self.credential
        if cred:
            out.append((Field.AGENT_IMAGE, [f"image: {quote(cred.image)}"]))
            if cred.has_login:
                out.append(
                    (
                        Field.AGENT_AUTH,
                        [
                            "auth:",
                            f"  serveraddress: {quote(cred.registry_host)}",
                            f"  username: {quote(cred.username or '')}",
                            f"  password: {quote(cred.password or '')}",
                        ],
                    )
                )
            else:
                out.append((Field.AGENT_AUTH, ["auth: {}"]))

        if self.hostname:
            out.append((Field.HOSTNAME, [f"hostname: {quote(self.hostname)}"]))
        if self.connect:
            out.append((Field.CONNECT, _endpoint_lines("connect", self.connect)))
        if self.listen:
            out.append((Field.LISTEN, _endpoint_lines("listen", self.listen)))
        if self.homedir:
            out.append((Field.HOMEDIR, [f"homedir: {quote(self.homedir)}"]))
        if self.container_os:
            out.append(
                (
                    Field.ENGINE,
                    [
                        "moby_runtime:",
                        f"  uri: {quote(ENGINE_URIS[self.container_os])}",
                        f"  network: {quote(ENGINE_NETWORKS[self.container_os])}",
                    ],
                )
            )
        return out

    def apply(self, doc: ConfigDocument) -> ConfigDocument:
        for field, lines in self.patches():
            doc = doc.remove(field) if lines is None else doc.patch(field, lines)
        return doc


def _endpoint_lines(section: str, endpoints: Endpoints) -> List[str]:
    return [
        f"{section}:",
        f"  management_uri: {quote(endpoints.management_uri)}",
        f"  workload_uri: {quote(endpoints.workload_uri)}",
    ]


def load_template() -> ConfigDocument:
    text = resources.files("edge_installer").joinpath("templates/config.yaml").read_text(encoding="utf-8")
    return ConfigDocument(text)


def load_document(path: Path) -> ConfigDocument:
    return ConfigDocument(path.read_text(encoding="utf-8"))


def save_document(path: Path, doc: ConfigDocument) -> None:
    """Write atomically: readers see the old file or the new one, never half."""

    doc.parse()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(doc.text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.info("Wrote %s", str(path))


def container_os_from_text(text: str) -> ContainerOs:
    """Infer the container mode from the engine URI; Windows unless clearly Linux."""

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        return ContainerOs.WINDOWS
    if not isinstance(data, dict):
        return ContainerOs.WINDOWS
    runtime = data.get("moby_runtime")
    uri = runtime.get("uri") if isinstance(runtime, dict) else None
    if uri == ENGINE_URIS[ContainerOs.LINUX]:
        return ContainerOs.LINUX
    return ContainerOs.WINDOWS
