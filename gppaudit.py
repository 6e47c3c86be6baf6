from __future__ import annotations

import argparse
import configparser
import csv
import json
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Protocol
from xml.etree import ElementTree as ET

from colorama import init, Fore, Style
from ldap3 import Connection, NTLM, SIMPLE, SUBTREE, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

init(autoreset=True)


PREFERENCE_FILES = frozenset({
    "Groups.xml",
    "ScheduledTasks.xml",
    "Services.xml",
    "DataSources.xml",
    "Drives.xml",
})

GUID_PATTERN = re.compile(r"\{.*?\}")
UNKNOWN = "Unknown"


class GPPAuditError(Exception):
    pass


class PathNotFound(GPPAuditError, FileNotFoundError):
    pass


class FileParseError(GPPAuditError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class NameResolutionError(GPPAuditError):
    pass


class SubtreeAccessError(GPPAuditError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


ErrorHandler = Callable[[GPPAuditError], None]


def _report(error: GPPAuditError, on_error: Optional[ErrorHandler]) -> None:
    # Without a handler the error is raised to the caller.
    if on_error is None:
        raise error
    on_error(error)


class ConfigScope(Enum):
    MACHINE = "Computer Configuration"
    USER = "User Configuration"
    UNKNOWN = UNKNOWN


@dataclass(frozen=True)
class PreferenceSchema:
    basename: str
    root_tag: str
    node_tag: str
    label: str
    tree: str = "Control Panel Settings"
    username_attrs: tuple[str, ...] = ("userName",)

    @property
    def selector(self) -> str:
        return f"{self.root_tag}/{self.node_tag}"

    def matches(self, tag: str) -> bool:
        return self.node_tag == "*" or _local_name(tag) == self.node_tag


PREFERENCE_SCHEMAS: dict[str, PreferenceSchema] = {
    schema.basename: schema
    for schema in (
        PreferenceSchema("Groups", "Groups", "User", "Local Users"),
        PreferenceSchema(
            "ScheduledTasks", "ScheduledTasks", "*", "Scheduled Tasks",
            username_attrs=("runAs", "userName"),
        ),
        PreferenceSchema("DataSources", "DataSources", "DataSource", "Data sources"),
        PreferenceSchema("Drives", "Drives", "Drive", "Drive Maps", tree="Windows Settings"),
        PreferenceSchema(
            "Services", "NTServices", "NTService", "Services",
            username_attrs=("accountName", "userName"),
        ),
    )
}


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    name: str
    scope: ConfigScope

    @property
    def schema_key(self) -> str:
        return Path(self.name).stem


@dataclass(frozen=True)
class PreferenceNode:
    schema: PreferenceSchema
    name: Optional[str]
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def cpassword(self) -> Optional[str]:
        return self.properties.get("cpassword")

    @property
    def username(self) -> Optional[str]:
        for attr in self.schema.username_attrs:
            if attr in self.properties:
                return self.properties[attr]
        return None

    @property
    def acct_disabled(self) -> Optional[str]:
        return self.properties.get("acctDisabled")


@dataclass(frozen=True)
class FindingRecord:
    gpo_name: str
    preference: Optional[str]
    path: str
    username: Optional[str]
    cpassword: str
    acct_disabled: Optional[str]
    source_file: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return {
            "GPOName": self.gpo_name,
            "Preference": self.preference,
            "Path": self.path,
            "Username": self.username,
            "CPassword": self.cpassword,
            "AcctDisabled": self.acct_disabled,
            "File": self.source_file,
        }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _find_child_by_localname(elem: ET.Element, localname: str) -> Optional[ET.Element]:
    for child in list(elem):
        if _local_name(child.tag) == localname:
            return child
    return None


def default_scan_root() -> Path:
    return Path(os.environ.get("SystemRoot", r"C:\Windows")) / "SYSVOL"


def derive_scope(path: str | Path) -> ConfigScope:
    # Substring test, Machine first; a path holding both counts as Machine.
    text = str(path)
    if "Machine" in text:
        return ConfigScope.MACHINE
    if "User" in text:
        return ConfigScope.USER
    return ConfigScope.UNKNOWN


def extract_guid(path: str | Path) -> Optional[str]:
    m = GUID_PATTERN.search(str(path))
    return m.group(0) if m else None


def policy_location(scope: ConfigScope, schema: PreferenceSchema) -> str:
    return " -> ".join([scope.value, "Preferences", schema.tree, schema.label])


def scan(root: str | Path, on_error: Optional[ErrorHandler] = None) -> Iterator[CandidateFile]:
    """Yield every known preference file below ``root``.

    Filenames are compared case-sensitively against PREFERENCE_FILES.
    Unreadable subdirectories are handed to ``on_error`` and skipped;
    without a handler the first one is raised as SubtreeAccessError.
    """
    root = Path(root)
    if not root.exists():
        raise PathNotFound(str(root))

    def walk_error(exc: OSError) -> None:
        _report(SubtreeAccessError(exc.filename or str(root), exc.strerror or str(exc)), on_error)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=walk_error):
        for filename in filenames:
            if filename not in PREFERENCE_FILES:
                continue
            full_path = Path(dirpath) / filename
            yield CandidateFile(path=full_path, name=filename, scope=derive_scope(full_path))


def load_nodes(candidate: CandidateFile) -> list[PreferenceNode]:
    schema = PREFERENCE_SCHEMAS.get(candidate.schema_key)
    if schema is None:
        return []

    try:
        tree = ET.parse(str(candidate.path))
    except (ET.ParseError, OSError) as exc:
        raise FileParseError(candidate.path, str(exc)) from exc

    root = tree.getroot()
    if root is None or _local_name(root.tag) != schema.root_tag:
        return []

    nodes: list[PreferenceNode] = []
    for elem in list(root):
        if not schema.matches(elem.tag):
            continue
        props = _find_child_by_localname(elem, "Properties")
        nodes.append(
            PreferenceNode(
                schema=schema,
                name=elem.get("name"),
                properties=dict(props.attrib) if props is not None else {},
            )
        )
    return nodes


class GPONameResolver(Protocol):
    def resolve(self, guid: str) -> str:
        """Return the display name for ``guid`` or raise NameResolutionError.

        Any other exception is wrapped by resolve_policy_name.
        """
        ...


class GptIniNameResolver:
    """Reads GPO display names from the GPT.INI beside each policy folder."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._names: Optional[dict[str, str]] = None

    def _load(self) -> dict[str, str]:
        names: dict[str, str] = {}
        for dirpath, _dirnames, filenames in os.walk(self.root):
            gpt = next((f for f in filenames if f.upper() == "GPT.INI"), None)
            if gpt is None:
                continue
            guid = extract_guid(Path(dirpath).name)
            if not guid:
                continue
            parser = configparser.ConfigParser(interpolation=None, strict=False)
            try:
                parser.read(Path(dirpath) / gpt, encoding="utf-8-sig")
            except (configparser.Error, OSError, UnicodeError):
                continue
            display = parser.get("General", "displayName", fallback=None)
            if display:
                names[guid.upper()] = display.strip()
        return names

    def resolve(self, guid: str) -> str:
        if self._names is None:
            self._names = self._load()
        try:
            return self._names[guid.upper()]
        except KeyError:
            raise NameResolutionError(f"No GPT.INI displayName for {guid}") from None


class LdapNameResolver:
    """Looks up groupPolicyContainer display names over LDAP."""

    def __init__(
        self,
        server: str,
        domain: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        timeout: int = 10,
    ):
        self.server = server
        self.domain = domain
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.base_dn = ",".join(f"DC={part}" for part in domain.split(".") if part)
        self._connection: Optional[Connection] = None
        self._bind_error: Optional[NameResolutionError] = None
        self._cache: dict[str, str] = {}
        self._misses: set[str] = set()

    def _connect(self) -> Connection:
        if self._connection is not None:
            return self._connection
        # A failed bind is not retried for the rest of the run.
        if self._bind_error is not None:
            raise self._bind_error
        try:
            self._connection = self._bind()
        except LDAPException as exc:
            self._bind_error = NameResolutionError(f"LDAP bind to {self.server} failed: {exc}")
            raise self._bind_error from exc
        return self._connection

    def _bind(self) -> Connection:
        server = Server(
            self.server,
            port=636 if self.use_ssl else 389,
            use_ssl=self.use_ssl,
            connect_timeout=self.timeout,
        )
        if self.username and "\\" in self.username:
            conn = Connection(server, user=self.username, password=self.password,
                              authentication=NTLM, auto_bind=True, receive_timeout=self.timeout)
        elif self.username:
            user = self.username if "@" in self.username else f"{self.username}@{self.domain}"
            conn = Connection(server, user=user, password=self.password,
                              authentication=SIMPLE, auto_bind=True, receive_timeout=self.timeout)
        else:
            conn = Connection(server, auto_bind=True, receive_timeout=self.timeout)
        return conn

    def resolve(self, guid: str) -> str:
        key = guid.upper()
        if key in self._cache:
            return self._cache[key]
        if key in self._misses:
            raise NameResolutionError(f"No groupPolicyContainer found for {guid}")

        conn = self._connect()
        try:
            conn.search(
                search_base=self.base_dn,
                search_filter=f"(&(objectCategory=groupPolicyContainer)(name={escape_filter_chars(guid)}))",
                search_scope=SUBTREE,
                attributes=["displayName"],
            )
            entries = list(conn.entries)
        except LDAPException as exc:
            raise NameResolutionError(f"LDAP lookup for {guid} failed: {exc}") from exc

        for entry in entries:
            display = entry.displayName.value if "displayName" in entry else None
            if display:
                self._cache[key] = str(display)
                return self._cache[key]
        self._misses.add(key)
        raise NameResolutionError(f"No groupPolicyContainer found for {guid}")


def resolve_policy_name(
    path: str | Path,
    resolver: Optional[GPONameResolver] = None,
    on_error: Optional[ErrorHandler] = None,
) -> str:
    guid = extract_guid(path)
    if guid is None:
        return UNKNOWN
    if resolver is None:
        return guid
    try:
        return resolver.resolve(guid)
    except NameResolutionError as exc:
        _report(exc, on_error)
    except Exception as exc:
        wrapped = NameResolutionError(f"Lookup for {guid} failed: {exc!r}")
        wrapped.__cause__ = exc
        _report(wrapped, on_error)
    return guid


def extract(
    candidate: CandidateFile,
    resolver: Optional[GPONameResolver] = None,
    on_error: Optional[ErrorHandler] = None,
) -> Iterator[FindingRecord]:
    try:
        nodes = load_nodes(candidate)
    except FileParseError as exc:
        _report(exc, on_error)
        return

    # Empty and missing cpassword are treated alike.
    exposed = [node for node in nodes if node.cpassword]
    if not exposed:
        return

    gpo_name = resolve_policy_name(candidate.path, resolver, on_error)
    location = policy_location(candidate.scope, exposed[0].schema)
    for node in exposed:
        yield FindingRecord(
            gpo_name=gpo_name,
            preference=node.name,
            path=location,
            username=node.username,
            cpassword=node.cpassword,
            acct_disabled=node.acct_disabled,
            source_file=str(candidate.path),
        )


class GPPAuditor:
    def __init__(self, resolver: Optional[GPONameResolver] = None, quiet: bool = False):
        self.resolver = resolver
        self.quiet = quiet
        self.findings: list[FindingRecord] = []
        self.diagnostics: list[str] = []
        self.files_scanned = 0

    def _diagnose(self, error: GPPAuditError) -> None:
        if isinstance(error, FileParseError):
            msg = f"Error parsing XML: {error}"
        elif isinstance(error, NameResolutionError):
            msg = f"Could not resolve GPO name: {error}"
        elif isinstance(error, SubtreeAccessError):
            msg = f"Skipping unreadable directory: {error}"
        else:
            msg = str(error)
        self.diagnostics.append(msg)
        if not self.quiet:
            print(f"{Fore.RED}[!] {msg}", file=sys.stderr)

    def _warn(self, msg: str) -> None:
        self.diagnostics.append(msg)
        if not self.quiet:
            print(f"{Fore.YELLOW}[!] {msg}", file=sys.stderr)

    def print_banner(self, root: Path) -> None:
        if self.quiet:
            return
        print(f"\n{Fore.CYAN}{'='*60}")
        print(f"{Fore.CYAN} SCANNING FOR GPP PASSWORDS: {Fore.WHITE}{Style.BRIGHT}{root}")
        print(f"{Fore.CYAN}{'='*60}")

    def print_finding(self, finding: FindingRecord) -> None:
        if self.quiet:
            return
        print(f"\n{Fore.RED}{Style.BRIGHT}[CRITICAL] cpassword found in {finding.gpo_name}")
        for key, value in finding.as_dict().items():
            print(f"  {key:<13}: {value if value is not None else ''}")

    def iter_findings(self, root: str | Path) -> Iterator[FindingRecord]:
        root = Path(root)
        if self.resolver is None:
            self._warn("GPO name resolution unavailable; GPO names will be reported as GUIDs.")

        for candidate in scan(root, on_error=self._diagnose):
            self.files_scanned += 1
            for finding in extract(candidate, self.resolver, on_error=self._diagnose):
                self.findings.append(finding)
                yield finding

    def audit(self, root: str | Path) -> int:
        root = Path(root)
        if not root.exists():
            self._warn(f"Path not found: {root}")
            return 0
        self.print_banner(root)
        count = 0
        for finding in self.iter_findings(root):
            self.print_finding(finding)
            count += 1
        return count

    def export_json(self, output_path: Path) -> None:
        payload = {
            "generated_at": _utc_now_iso(),
            "tool": "gppaudit",
            "summary": {
                "files_scanned": self.files_scanned,
                "total_findings": len(self.findings),
                "diagnostics": len(self.diagnostics),
            },
            "findings": [f.as_dict() for f in self.findings],
            "diagnostics": list(self.diagnostics),
        }
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def export_csv(self, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fieldnames = ["GPOName", "Preference", "Path", "Username", "CPassword", "AcctDisabled", "File"]
        with output_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for finding in self.findings:
                writer.writerow(finding.as_dict())

    def print_summary(self) -> None:
        if self.quiet:
            return
        color = Fore.RED if self.findings else Fore.GREEN
        print(f"\n{Style.BRIGHT}[Summary]")
        print(f"  Preference files scanned: {self.files_scanned}")
        print(f"  {color}cpassword entries{Style.RESET_ALL}:        {len(self.findings)}")
        print(f"  Diagnostics:              {len(self.diagnostics)}")


@dataclass
class Config:
    root: Path = field(default_factory=default_scan_root)
    json_out: Optional[Path] = None
    csv_out: Optional[Path] = None
    gpt_ini: bool = False
    ldap_server: Optional[str] = None
    domain: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = False

    def __post_init__(self):
        if self.password is None:
            self.password = os.environ.get("GPPAUDIT_LDAP_PASSWORD")

    def build_resolver(self) -> Optional[GPONameResolver]:
        if self.ldap_server:
            if not self.domain:
                raise ValueError("--domain is required with --ldap-server")
            return LdapNameResolver(
                self.ldap_server,
                self.domain,
                username=self.username,
                password=self.password,
                use_ssl=self.use_ssl,
            )
        if self.gpt_ini:
            return GptIniNameResolver(self.root)
        return None


def parse_arguments(argv: Optional[Iterable[str]] = None) -> Config:
    parser = argparse.ArgumentParser(
        description=(
            "GPP cpassword Auditor\n\n"
            "Recursively scans a Group Policy replication tree (SYSVOL) for Group Policy Preference "
            "files that embed a cpassword attribute. The AES key protecting cpassword is public, "
            "so every hit is an exposed credential. Values are reported verbatim, never decrypted."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Files inspected (case-sensitive names):\n"
            "  Groups.xml, ScheduledTasks.xml, Services.xml, DataSources.xml, Drives.xml\n\n"
            "Examples:\n"
            "  python3 gppaudit.py\n"
            "  python3 gppaudit.py /mnt/sysvol --json-out out.json --csv-out out.csv\n"
            "  python3 gppaudit.py /mnt/sysvol --gpt-ini\n"
            "  python3 gppaudit.py /mnt/sysvol --ldap-server dc01 --domain corp.local -u CORP\\\\auditor\n"
        ),
    )
    parser.add_argument("path", nargs="?", help="Root to scan (default: %%SystemRoot%%\\SYSVOL)")
    parser.add_argument("--json-out", help="Write findings to JSON")
    parser.add_argument("--csv-out", help="Write findings to CSV")

    names = parser.add_mutually_exclusive_group()
    names.add_argument("--gpt-ini", action="store_true", help="Resolve GPO names from GPT.INI displayName")
    names.add_argument("--ldap-server", help="Resolve GPO names over LDAP against this domain controller")
    parser.add_argument("--domain", help="Domain FQDN for LDAP lookups")
    parser.add_argument("-u", "--username", help="LDAP user (DOMAIN\\user for NTLM, user@domain for simple bind)")
    parser.add_argument("-p", "--password", help="LDAP password (or set GPPAUDIT_LDAP_PASSWORD)")
    parser.add_argument("--ldaps", action="store_true", help="Use LDAPS (636)")

    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.ldap_server and not args.domain:
        parser.error("--domain is required with --ldap-server")

    config = Config(
        json_out=Path(args.json_out) if args.json_out else None,
        csv_out=Path(args.csv_out) if args.csv_out else None,
        gpt_ini=args.gpt_ini,
        ldap_server=args.ldap_server,
        domain=args.domain,
        username=args.username,
        password=args.password,
        use_ssl=args.ldaps,
    )
    if args.path:
        config.root = Path(args.path)
    return config


def main(argv: Optional[Iterable[str]] = None) -> int:
    config = parse_arguments(argv)

    auditor = GPPAuditor(resolver=config.build_resolver())
    auditor.audit(config.root)
    auditor.print_summary()

    if config.json_out:
        try:
            auditor.export_json(config.json_out)
            print(f"{Fore.GREEN}[+] Wrote JSON: {config.json_out}")
        except OSError as exc:
            print(f"{Fore.RED}[!] JSON export error: {exc}", file=sys.stderr)

    if config.csv_out:
        try:
            auditor.export_csv(config.csv_out)
            print(f"{Fore.GREEN}[+] Wrote CSV: {config.csv_out}")
        except OSError as exc:
            print(f"{Fore.RED}[!] CSV export error: {exc}", file=sys.stderr)

    return 0

if __name__ == "__main__":
    raise SystemExit(main())
