#!/usr/bin/env python3
"""signtools - thin wrappers around the Apple signing and packaging tools.

This module provides tools for:
1. Locating codesign, security, zip, unzip, xcodebuild and openssl on disk
2. Signing and verifying bundles with codesign
3. Extracting entitlements from a provisioning profile
4. Zipping/unzipping payloads and exporting an .xcarchive to an .ipa
5. Listing the code signing identities available in the keychain

Every operation builds an argument list, runs the external binary and
parses what it prints. Nothing here implements signing or compression.

Usage (API):
    from signtools import ToolInvoker, find_in_path

    invoker = ToolInvoker(paths=find_in_path())
    for identity in invoker.get_identities():
        print(identity.hash, identity.name)

    invoker.codesign(identity.hash, "Payload/My.app",
                     entitlements="entitlements.plist")
    entitlements = invoker.get_entitlements("embedded.mobileprovision")
"""

import enum
import logging
import os
import plistlib
import shutil
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import IO, Any, Mapping
from xml.parsers.expat import ExpatError

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Combined stdout/stderr cap for a single invocation (1 MiB)
MAX_OUTPUT = 1024 * 1024

# Return code reported when the binary could not be spawned at all
SPAWN_FAILED = 127

# Default locations of the external tools
DEFAULT_TOOL_PATHS = {
    "zip": "/usr/bin/zip",
    "unzip": "/usr/bin/unzip",
    "codesign": "/usr/bin/codesign",
    "security": "/usr/bin/security",
    "xcodebuild": "/usr/bin/xcodebuild",
    "openssl": "/usr/local/bin/openssl",
}

# Environment variable names
ENV_CMS_BACKEND = "SIGNTOOLS_CMS_BACKEND"

# Top-level key of the decoded provisioning profile
ENTITLEMENTS_KEY = "Entitlements"

# ----------------------------------------------------------------------------
# Optional dotenv support (zero production dependencies)


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class SigntoolsError(Exception):
    """Base exception class for signtools errors."""


class CommandError(SigntoolsError):
    """Exception raised when an external tool fails or cannot be spawned."""

    def __init__(
        self,
        command: str,
        returncode: int,
        stdout: str | bytes | None = None,
        stderr: str | bytes | None = None,
        reason: str | None = None,
    ):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason
        message = f"Command '{command}' failed with return code {returncode}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    @property
    def output(self) -> str | bytes | None:
        """The most useful captured stream: stderr if present, else stdout."""
        return self.stderr or self.stdout

    @classmethod
    def wrap(cls, error: "CommandError") -> "CommandError":
        """Re-raise a generic command failure as a more specific kind."""
        wrapped = cls(
            error.command,
            error.returncode,
            error.stdout,
            error.stderr,
            reason=error.reason,
        )
        wrapped.args = error.args
        return wrapped


class CodesignError(CommandError):
    """Exception raised when codesigning fails."""


class ArchiveError(CommandError):
    """Exception raised when zipping or unzipping fails."""


class PackagingError(CommandError):
    """Exception raised when exporting an archive to an .ipa fails."""


class ConfigurationError(SigntoolsError):
    """Exception raised when configuration is invalid."""


class ValidationError(SigntoolsError):
    """Exception raised when a required argument is missing."""


class EntitlementsError(SigntoolsError):
    """Exception raised when a provisioning profile cannot be decoded."""


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .signtools.toml in current directory
    3. signtools.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but is not valid TOML

    Example .signtools.toml:
        [tools]
        openssl = "/opt/homebrew/bin/openssl"

        [entitlements]
        backend = "security"
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path and Path(config_path).exists():
        paths_to_try = [Path(config_path)]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".signtools.toml",
            cwd / "signtools.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: Mapping[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "tools", "entitlements")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Command execution utilities


# Read size for each pipe drain
CHUNK_SIZE = 64 * 1024


class _OutputBudget:
    """Byte allowance shared by the stdout and stderr readers."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0
        self.exceeded = False
        self._lock = threading.Lock()

    def consume(self, size: int) -> bool:
        """Account for size bytes; returns False once the limit is passed."""
        with self._lock:
            self.used += size
            if self.used > self.limit:
                self.exceeded = True
            return not self.exceeded


def _drain(
    stream: IO[bytes],
    chunks: list[bytes],
    budget: _OutputBudget,
    process: subprocess.Popen,
) -> None:
    while True:
        chunk = stream.read1(CHUNK_SIZE)
        if not chunk:
            return
        if budget.exceeded:
            continue
        chunks.append(chunk)
        if not budget.consume(len(chunk)):
            process.kill()


def run_command(
    command: list[str],
    cwd: Pathlike | None = None,
    text: bool = True,
    log: logging.Logger | None = None,
    max_output: int = MAX_OUTPUT,
) -> str | bytes:
    """Run a command and return its output.

    This is the single spawn primitive used by every operation. Uses
    shell=False; the command is passed as an argument vector. Output is
    read as it is produced and the process is killed as soon as stdout
    and stderr together exceed max_output bytes.

    Args:
        command: The command as a list of arguments
        cwd: Working directory for the process
        text: Decode output as UTF-8 text, replacing undecodable bytes
            (False returns raw bytes)
        log: Optional logger for debug output
        max_output: Combined stdout/stderr size above which the call fails

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command cannot be spawned, exits non-zero or
            produces more than max_output bytes of output
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        process = subprocess.Popen(
            command,
            shell=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        raise CommandError(cmd_str, SPAWN_FAILED, None, str(e)) from e

    budget = _OutputBudget(max_output)
    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    with process:
        readers = [
            threading.Thread(
                target=_drain,
                args=(process.stdout, out_chunks, budget, process),
                daemon=True,
            ),
            threading.Thread(
                target=_drain,
                args=(process.stderr, err_chunks, budget, process),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        for reader in readers:
            reader.join()
        returncode = process.wait()

    stdout: str | bytes = b"".join(out_chunks)
    stderr: str | bytes = b"".join(err_chunks)
    if text:
        stdout = stdout.decode("utf-8", errors="replace")
        stderr = stderr.decode("utf-8", errors="replace")

    if budget.exceeded:
        raise CommandError(
            cmd_str,
            returncode,
            stdout,
            stderr,
            reason=f"output exceeded {max_output} bytes",
        )
    if returncode != 0:
        raise CommandError(cmd_str, returncode, stdout, stderr)
    return stdout


# ----------------------------------------------------------------------------
# Tool path table


@dataclass(frozen=True)
class ToolPaths:
    """Resolved absolute paths of the external tools.

    Instances are immutable; use replace() or find_in_path() to derive
    an updated table.
    """

    zip: str = DEFAULT_TOOL_PATHS["zip"]
    unzip: str = DEFAULT_TOOL_PATHS["unzip"]
    codesign: str = DEFAULT_TOOL_PATHS["codesign"]
    security: str = DEFAULT_TOOL_PATHS["security"]
    xcodebuild: str = DEFAULT_TOOL_PATHS["xcodebuild"]
    openssl: str = DEFAULT_TOOL_PATHS["openssl"]

    @classmethod
    def names(cls) -> list[str]:
        """Tool names in declaration order."""
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, object], base: "ToolPaths | None" = None
    ) -> "ToolPaths":
        """Overlay a (partial) name -> path mapping onto base."""
        base = base or cls()
        updates = {}
        for name, path in mapping.items():
            if not isinstance(path, str):
                raise ConfigurationError(
                    f"Tool path for '{name}' must be a string: {path!r}"
                )
            updates[name] = path
        return base.replace(**updates)

    def replace(self, **paths: str) -> "ToolPaths":
        """Return a copy with the given tool paths changed."""
        unknown = set(paths) - set(self.names())
        if unknown:
            raise ConfigurationError(
                f"Unknown tool name(s): {', '.join(sorted(unknown))}"
            )
        return replace(self, **paths)

    def as_dict(self) -> dict[str, str]:
        return asdict(self)

    def missing(self) -> list[str]:
        """Names of tools whose configured path is not an existing file."""
        return [
            name for name, path in self.as_dict().items()
            if not Path(path).is_file()
        ]


def find_in_path(
    names: list[str] | None = None,
    base: ToolPaths | None = None,
    search_path: str | None = None,
) -> ToolPaths:
    """Resolve tool names against the executable search path.

    Each name is looked up concurrently. The table is only returned once
    every lookup has settled; tools that are not found keep their value
    from base.

    Args:
        names: Tool names to look up (default: all known tools)
        base: Table to start from (default: ToolPaths())
        search_path: PATH-style string to search instead of $PATH

    Returns:
        A new ToolPaths with every successfully resolved tool updated
    """
    log = logging.getLogger("signtools")
    base = base or ToolPaths()
    names = list(names) if names is not None else ToolPaths.names()
    unknown = set(names) - set(ToolPaths.names())
    if unknown:
        raise ConfigurationError(
            f"Unknown tool name(s): {', '.join(sorted(unknown))}"
        )

    found: dict[str, str] = {}
    if not names:
        return base

    with ThreadPoolExecutor(max_workers=len(names)) as executor:
        futures = {
            executor.submit(shutil.which, name, path=search_path): name
            for name in names
        }
        for future in as_completed(futures):
            name = futures[future]
            try:
                location = future.result()
            except OSError as e:
                log.debug("lookup of %s failed: %s", name, e)
                continue
            if location is None:
                log.debug(
                    "%s not found in path, keeping %s",
                    name, getattr(base, name),
                )
                continue
            found[name] = os.path.abspath(location)

    return base.replace(**found)


# ----------------------------------------------------------------------------
# Argument builders


class CmsBackend(enum.Enum):
    """Tool used to unwrap the CMS envelope of a provisioning profile."""

    OPENSSL = "openssl"  # portable
    SECURITY = "security"  # macOS only

    @classmethod
    def parse(cls, value: "str | CmsBackend") -> "CmsBackend":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            choices = ", ".join(b.value for b in cls)
            raise ConfigurationError(
                f"Unknown CMS backend '{value}' (expected one of: {choices})"
            ) from e


def codesign_args(
    identity: str,
    file: Pathlike,
    entitlements: Pathlike | None = None,
    keychain: Pathlike | None = None,
) -> list[str]:
    """Arguments for signing file with identity.

    --no-strict avoids the "resource envelope is obsolete" failure. The
    target must stay last.
    """
    args = ["--no-strict", "-fs", identity]
    if entitlements is not None:
        args.append(f"--entitlements={entitlements}")
    if keychain is not None:
        args.append(f"--keychain={keychain}")
    args.append(str(file))
    return args


def verify_args(file: Pathlike, keychain: Pathlike | None = None) -> list[str]:
    """Arguments for verifying the signature of file."""
    args = ["-v", "--no-strict"]
    if keychain is not None:
        args.append(f"--keychain={keychain}")
    args.append(str(file))
    return args


def cms_args(backend: CmsBackend, profile: Pathlike) -> list[str]:
    """Arguments for decoding a provisioning profile with backend."""
    if backend is CmsBackend.OPENSSL:
        return ["cms", "-in", str(profile), "-inform", "der", "-verify"]
    return ["cms", "-D", "-i", str(profile)]


def zip_args(output: Pathlike, src: Pathlike) -> list[str]:
    # quiet, recursive, store symlinks as links
    return ["-qry", str(output), str(src)]


def unzip_args(archive: Pathlike, output_dir: Pathlike) -> list[str]:
    return ["-o", str(archive), "-d", str(output_dir)]


def export_archive_args(archive: Pathlike, output_dir: Pathlike) -> list[str]:
    return [
        "-exportArchive",
        "-exportFormat",
        "ipa",
        "-archivePath",
        str(archive),
        "-exportPath",
        str(output_dir),
    ]


def find_identity_args() -> list[str]:
    return ["find-identity", "-v", "-p", "codesigning"]


# ----------------------------------------------------------------------------
# Output parsers


@dataclass(frozen=True)
class SigningIdentity:
    """A code signing identity as listed by `security find-identity`."""

    hash: str
    name: str


def parse_identities(output: str) -> list[SigningIdentity]:
    """Parse the table printed by `security find-identity -v`.

    Output format:
          1) 3F2A...9C "Apple Development: Jane Doe (ABCDE12345)"
          2) 77B1...04 "Apple Distribution: Example Inc (ABCDE12345)"
             2 valid identities found

    The last line is the summary and is dropped. Lines without a ") "
    separator, or without a space between hash and name, are skipped.
    Order is preserved and duplicates are kept. The name is kept exactly
    as printed, including its surrounding quotes.
    """
    lines = output.rstrip("\n").split("\n")[:-1]
    identities = []
    for line in lines:
        tok = line.find(") ")
        if tok == -1:
            continue
        entry = line[tok + 2:].strip()
        hash_, sep, name = entry.partition(" ")
        if not sep:
            continue
        identities.append(SigningIdentity(hash=hash_, name=name))
    return identities


def parse_entitlements(payload: bytes) -> dict[str, Any] | None:
    """Extract the Entitlements dict from a decoded profile plist.

    Returns:
        The entitlements, or None if the profile has no Entitlements key

    Raises:
        EntitlementsError: If payload is not a plist dictionary
    """
    try:
        profile = plistlib.loads(payload)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
        raise EntitlementsError(f"Profile payload is not a plist: {e}") from e
    if not isinstance(profile, dict):
        raise EntitlementsError(
            f"Profile payload is a {type(profile).__name__}, expected a dict"
        )
    return profile.get(ENTITLEMENTS_KEY)


# ----------------------------------------------------------------------------
# Tool invoker


class ToolInvoker:
    """Run the signing and packaging tools against a fixed path table.

    Args:
        paths: Tool path table (default: ToolPaths() built-in defaults)
        cms_backend: Tool used to decode provisioning profiles; "openssl"
            is portable, "security" is macOS only. Falls back to the
            SIGNTOOLS_CMS_BACKEND environment variable, then "openssl".
        max_output: Output cap applied to every invocation

    Example:
        invoker = ToolInvoker.from_config(discover=True)
        invoker.unzip("App.ipa", "work/")
        invoker.codesign("Apple Development: Jane Doe", "work/Payload/App.app")
        invoker.zip("work/", "App-resigned.ipa", "Payload")
    """

    def __init__(
        self,
        paths: ToolPaths | None = None,
        cms_backend: "str | CmsBackend | None" = None,
        max_output: int = MAX_OUTPUT,
    ) -> None:
        self.paths = paths or ToolPaths()
        if cms_backend is None:
            cms_backend = os.getenv(ENV_CMS_BACKEND) or CmsBackend.OPENSSL
        self.cms_backend = CmsBackend.parse(cms_backend)
        self.max_output = max_output
        self.log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object] | None = None,
        discover: bool = False,
    ) -> "ToolInvoker":
        """Build an invoker from a loaded config.

        Path overrides from the [tools] section are applied on top of the
        defaults, or on top of the discovered paths when discover is set.
        """
        if config is None:
            config = get_config()
        base = find_in_path() if discover else ToolPaths()
        tools = config.get("tools", {})
        if not isinstance(tools, dict):
            raise ConfigurationError("[tools] must be a table")
        paths = ToolPaths.from_mapping(tools, base=base)
        missing = paths.missing()
        if missing:
            logging.getLogger(cls.__name__).debug(
                "tools not found on disk: %s", ", ".join(missing)
            )
        backend = get_config_value(config, "entitlements", "backend")
        return cls(paths=paths, cms_backend=backend)

    def run_command(
        self,
        tool: str,
        args: list[str],
        cwd: Pathlike | None = None,
        text: bool = True,
    ) -> str | bytes:
        """Run tool (a ToolPaths name) with args."""
        command = [getattr(self.paths, tool)] + args
        return run_command(
            command, cwd=cwd, text=text, log=self.log,
            max_output=self.max_output,
        )

    def codesign(
        self,
        identity: str | None,
        file: Pathlike,
        entitlements: Pathlike | None = None,
        keychain: Pathlike | None = None,
    ) -> None:
        """Sign file in place with identity.

        Args:
            identity: Identity name or SHA-1 hash (required)
            file: Bundle or binary to sign
            entitlements: Optional entitlements plist
            keychain: Optional keychain to look the identity up in

        Raises:
            ValidationError: If identity is missing (nothing is spawned)
            CodesignError: If codesign fails
        """
        if not identity:
            raise ValidationError("identity is required to sign")
        self.log.info("signing: %s", file)
        try:
            self.run_command(
                "codesign", codesign_args(identity, file, entitlements, keychain)
            )
        except CommandError as e:
            raise CodesignError.wrap(e) from e

    def verify_codesign(
        self, file: Pathlike, keychain: Pathlike | None = None
    ) -> bool:
        """Verify the signature of file.

        Returns:
            True if codesign accepts the signature

        Raises:
            CodesignError: If codesign cannot be spawned or its output
                overflows the cap
        """
        try:
            self.run_command("codesign", verify_args(file, keychain))
        except CommandError as e:
            if e.returncode == SPAWN_FAILED or e.reason is not None:
                raise CodesignError.wrap(e) from e
            self.log.error(
                "verification failed for %s: %s\n%s", file, e, e.output
            )
            return False
        self.log.info("verified: %s", file)
        return True

    def get_entitlements(self, profile: Pathlike) -> dict[str, Any] | None:
        """Return the entitlements embedded in a provisioning profile.

        Returns:
            The Entitlements dictionary, or None if the profile has none

        Raises:
            EntitlementsError: If the profile cannot be verified or decoded
        """
        tool = self.cms_backend.value
        try:
            payload = self.run_command(
                tool, cms_args(self.cms_backend, profile), text=False
            )
        except CommandError as e:
            raise EntitlementsError(
                f"Failed to decode provisioning profile {profile}: {e}"
            ) from e
        entitlements = parse_entitlements(payload)
        if entitlements is None:
            self.log.warning("no %s in %s", ENTITLEMENTS_KEY, profile)
        return entitlements

    def zip(self, cwd: Pathlike, output: Pathlike, src: Pathlike) -> None:
        """Archive src (relative to cwd) into output, replacing output.

        A relative output path is resolved against cwd by zip itself.
        """
        target = Path(output)
        if not target.is_absolute():
            target = Path(cwd) / target
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            # zip itself reports an output it cannot write
            self.log.warning("could not remove %s: %s", target, e)
        self.log.info("zipping %s -> %s", src, output)
        try:
            self.run_command("zip", zip_args(output, src), cwd=cwd)
        except CommandError as e:
            raise ArchiveError.wrap(e) from e

    def unzip(self, archive: Pathlike, output_dir: Pathlike) -> None:
        """Extract archive into output_dir, overwriting existing files."""
        self.log.info("unzipping %s -> %s", archive, output_dir)
        try:
            self.run_command("unzip", unzip_args(archive, output_dir))
        except CommandError as e:
            raise ArchiveError.wrap(e) from e

    def xcarchive_to_ipa(self, archive: Pathlike, output_dir: Pathlike) -> None:
        """Export an .xcarchive as an .ipa into output_dir."""
        self.log.info("exporting %s -> %s", archive, output_dir)
        try:
            self.run_command(
                "xcodebuild", export_archive_args(archive, output_dir)
            )
        except CommandError as e:
            raise PackagingError.wrap(e) from e

    def get_identities(self) -> list[SigningIdentity]:
        """List the valid code signing identities in the keychain."""
        output = self.run_command("security", find_identity_args())
        identities = parse_identities(output)
        self.log.debug("found %d signing identities", len(identities))
        return identities


# ----------------------------------------------------------------------------
# Functional API


def codesign(
    identity: str | None,
    file: Pathlike,
    entitlements: Pathlike | None = None,
    keychain: Pathlike | None = None,
    paths: ToolPaths | None = None,
) -> None:
    """Sign file with identity using a default ToolInvoker."""
    ToolInvoker(paths).codesign(identity, file, entitlements, keychain)


def verify_codesign(
    file: Pathlike,
    keychain: Pathlike | None = None,
    paths: ToolPaths | None = None,
) -> bool:
    """Verify the signature of file using a default ToolInvoker."""
    return ToolInvoker(paths).verify_codesign(file, keychain)


def get_entitlements(
    profile: Pathlike,
    paths: ToolPaths | None = None,
    cms_backend: "str | CmsBackend | None" = None,
) -> dict[str, Any] | None:
    """Extract entitlements from a provisioning profile."""
    return ToolInvoker(paths, cms_backend).get_entitlements(profile)


def zip(
    cwd: Pathlike,
    output: Pathlike,
    src: Pathlike,
    paths: ToolPaths | None = None,
) -> None:
    """Archive src relative to cwd into output."""
    ToolInvoker(paths).zip(cwd, output, src)


def unzip(
    archive: Pathlike, output_dir: Pathlike, paths: ToolPaths | None = None
) -> None:
    """Extract archive into output_dir."""
    ToolInvoker(paths).unzip(archive, output_dir)


def xcarchive_to_ipa(
    archive: Pathlike, output_dir: Pathlike, paths: ToolPaths | None = None
) -> None:
    """Export an .xcarchive as an .ipa."""
    ToolInvoker(paths).xcarchive_to_ipa(archive, output_dir)


def get_identities(paths: ToolPaths | None = None) -> list[SigningIdentity]:
    """List the valid code signing identities in the keychain."""
    return ToolInvoker(paths).get_identities()
