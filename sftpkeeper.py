#!/usr/bin/env python3
# Script: sftpkeeper.py
# Keeps the accounts of an SFTP container alive across restarts
#
# What this does (for my future self):
# - The container filesystem is throwaway; only the data dir survives a restart
# - Restore passwd/group/shadow from the data dir before touching any account
# - Restore the SSH host keys (generate them once, on the very first boot only)
# - Create any user in the registry file that the OS doesn't know about yet
# - Pull each user's public keys from the key host (github.com/<handle>.keys)
# - Fix ownership in home dirs and link every shared mount into each home
# - Never deletes anything: accounts, keys and links only ever get added
# - Hands over to sshd when `init` is done

#==============================
# Imports
#==============================

# Standard library
import argparse
import glob
import logging
import os
import re
import shutil
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from urllib import parse as _urlparse, request as _urlreq
from urllib.error import HTTPError, URLError

# Third-party
from colorama import Fore, Style
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

#=================#
# Global Settings #
#=================#

VERSION = "1.2.0"
MIN_PYTHON_VERSION = (3, 10)

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
DATA_DIR = "/data"                  # The only thing that survives a restart
MOUNTS_DIR = "/mounts"              # Shared dirs, linked into every home
USERS_ROOT = "/home"
ETC_DIR = "/etc"
SSH_DIR = "/etc/ssh"

KEY_HOST = "github.com"             # Keys come from https://<KEY_HOST>/<handle>.keys
KEY_FETCH_TIMEOUT = 10              # Seconds
DEFAULT_SHELL = "/bin/sh"

HOST_KEY_TYPES = ["rsa", "ecdsa", "ed25519"]
SYSTEM_ACCOUNTS = {"root", "sshd"}  # Never listed as SFTP users
ISOLATE_USER_FAILURES = False       # True = one user's broken key source doesn't stop the rest

LOG_FILE = "/var/log/sftpkeeper/sftpkeeper.log"

REGISTRY_NAME = "users.conf"
ACCOUNT_SNAPSHOT_NAME = "etc"
HOST_KEY_SNAPSHOT_NAME = "ssh"
FIELD_SEP = "|"

# Live account tables we carry across restarts; shadow* are 0600, the rest 0640
ACCOUNT_TABLES = ("passwd", "passwd-", "group", "group-", "shadow", "shadow-")
SHADOW_TABLES = {"shadow", "shadow-"}

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":    "/usr/sbin/useradd",
  "id":         "/usr/bin/id",
  "ssh-keygen": "/usr/bin/ssh-keygen",
  "sshd":       "/usr/sbin/sshd",
}

#========#
# Errors #
#========#

class SftpKeeperError(Exception):
    """Base exception for everything the reconciler treats as fatal."""
    pass

class RegistryError(SftpKeeperError):
    """Bad registry record (on write), or a malformed line (on read)."""
    pass

class SnapshotError(SftpKeeperError):
    """Account tables couldn't be persisted."""
    pass

class HostKeyError(SftpKeeperError):
    """Host keys couldn't be generated or the persisted bundle is unusable."""
    pass

class KeyFetchError(SftpKeeperError):
    """The key host didn't give us a key list."""
    pass

class KeyValidationError(SftpKeeperError):
    """A manually added key isn't a public key."""
    pass

class UnknownUserError(SftpKeeperError):
    pass

class UnsafePathError(SftpKeeperError):
    """Refusing to write through a symlink or onto a non-regular file."""
    pass

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing/blank.
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name, "")
    if not v.strip():
        return list(default)
    parts = [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]
    return parts or list(default)

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Blank counts as missing, except where allow_blank (LOG_FILE='' turns the file off).
def _env_str(name: str, default: str, allow_blank: bool = False) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    if not v and not allow_blank:
        return default
    return v

# Function: _env_float
# Purpose : Parse a number from env.
# Notes   : Logs and falls back to default on junk.
def _env_float(name: str, default: float) -> float:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        logging.error("Bad number in %s: %r", name, v)
        return default

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise UnsafePathError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

def _safe_write_atomic(path: str, data: str | bytes, mode: int = 0o600):
    d = os.path.dirname(path)
    _assert_regular_or_missing(path)
    # write to a secure temp in same dir
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=d)
    try:
        os.write(fd, data if isinstance(data, bytes) else data.encode())
        os.fsync(fd)
    finally:
        os.close(fd)
    os.chmod(tmp, mode)
    # refuse to overwrite a symlink (it may have appeared since the check above)
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            os.remove(tmp)
            raise UnsafePathError(f"Refusing to overwrite symlink: {path}")
    except FileNotFoundError:
        pass
    os.replace(tmp, path)

#===============#
# Configuration #
#===============#

@dataclass
class Config:
    data_dir: str = DATA_DIR
    mounts_dir: str = MOUNTS_DIR
    users_root: str = USERS_ROOT
    etc_dir: str = ETC_DIR
    ssh_dir: str = SSH_DIR
    key_host: str = KEY_HOST
    key_timeout: float = KEY_FETCH_TIMEOUT
    default_shell: str = DEFAULT_SHELL
    host_key_types: list[str] = field(default_factory=lambda: list(HOST_KEY_TYPES))
    system_accounts: set[str] = field(default_factory=lambda: set(SYSTEM_ACCOUNTS))
    sshd_args: list[str] = field(default_factory=lambda: [BIN["sshd"], "-D", "-e"])
    isolate_failures: bool = ISOLATE_USER_FAILURES
    log_file: str = LOG_FILE

    @property
    def registry_path(self) -> str:
        return os.path.join(self.data_dir, REGISTRY_NAME)

    @property
    def account_snapshot_dir(self) -> str:
        return os.path.join(self.data_dir, ACCOUNT_SNAPSHOT_NAME)

    @property
    def host_key_snapshot_dir(self) -> str:
        return os.path.join(self.data_dir, HOST_KEY_SNAPSHOT_NAME)

    def homeFor(self, username: str) -> str:
        return os.path.join(self.users_root, username)

    def authorizedKeysFor(self, username: str) -> str:
        return os.path.join(self.homeFor(username), ".ssh", "authorized_keys")

# Function: fncLoadConfig
# Purpose : Build a Config from the environment, falling back to the defaults above.
# Notes   : Nothing is read at import time, so tests can just construct Config() directly.
def fncLoadConfig() -> Config:
    return Config(
        data_dir=_env_str("SFTP_DATA_DIR", DATA_DIR),
        mounts_dir=_env_str("SFTP_MOUNTS_DIR", MOUNTS_DIR),
        users_root=_env_str("SFTP_USERS_ROOT", USERS_ROOT),
        etc_dir=_env_str("SFTP_ETC_DIR", ETC_DIR),
        ssh_dir=_env_str("SFTP_SSH_DIR", SSH_DIR),
        key_host=_env_str("KEY_HOST", KEY_HOST),
        key_timeout=_env_float("KEY_FETCH_TIMEOUT", KEY_FETCH_TIMEOUT),
        default_shell=_env_str("DEFAULT_SHELL", DEFAULT_SHELL),
        host_key_types=_env_list("HOST_KEY_TYPES", HOST_KEY_TYPES),
        system_accounts=set(_env_list("SYSTEM_ACCOUNTS", sorted(SYSTEM_ACCOUNTS))),
        isolate_failures=_env_bool("ISOLATE_USER_FAILURES", ISOLATE_USER_FAILURES),
        log_file=_env_str("LOG_FILE", LOG_FILE, allow_blank=True),
    )

#===================#
# Utility / Logging #
#===================#

# Function: fncSetupLogging
# Purpose : Configure logging to stderr (and a file when LOG_FILE is set).
# Notes   : stdout is reserved for data (list-users), so the stream handler is stderr.
def fncSetupLogging(config: Config, verbose: bool = False):
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        try:
            os.makedirs(os.path.dirname(config.log_file) or ".", exist_ok=True)
            handlers.append(logging.FileHandler(config.log_file))
        except OSError as e:
            fncPrintMessage(f"Can't log to {config.log_file} ({e}); stderr only.", "warning")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Goes to stderr; only data goes to stdout.
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.RED   + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
        "disabled":Fore.LIGHTBLACK_EX + "{X} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}", file=sys.stderr)

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("sftpkeeper needs Python %d.%d or higher." % MIN_PYTHON_VERSION, "error")
        sys.exit(1)

# Function: fncAdminCheck
# Purpose : Make sure we're root before touching accounts.
def fncAdminCheck():
    if os.geteuid() != 0:
        raise SftpKeeperError("This needs root; accounts, host keys and ownership are root's business")

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Uses BIN map for safety.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

# Function: fncFetchText
# Purpose : GET a plaintext document; the default fetcher for key lists.
# Notes   : Anything but a 2xx body raises KeyFetchError. No retries; the whole run is cheap to redo.
def fncFetchText(url: str, timeout: float) -> str:
    req = _urlreq.Request(url, headers={"Accept": "text/plain", "User-Agent": f"sftpkeeper/{VERSION}"})
    try:
        with _urlreq.urlopen(req, timeout=timeout) as resp:
            status = getattr(resp, "status", 200)
            if not 200 <= status < 300:
                raise KeyFetchError(f"GET {url} returned HTTP {status}")
            return resp.read().decode("utf-8", errors="surrogateescape")
    except HTTPError as e:
        raise KeyFetchError(f"GET {url} returned HTTP {e.code}") from e
    except URLError as e:
        raise KeyFetchError(f"GET {url} failed: {e.reason}") from e
    except (TimeoutError, OSError) as e:
        raise KeyFetchError(f"GET {url} failed: {e}") from e

#=====================#
# System capabilities #
#=====================#

class SystemOps:
    """Everything that mutates the OS through a binary or needs root.

    The reconcilers only talk to the OS through this, so tests swap in a
    subclass that records calls instead of running useradd/ssh-keygen.
    """

    # Function: createAccount
    # Purpose : Create a login-less-password account with its home.
    # Notes   : '*' can never match a password, but unlike '!' it doesn't lock key logins.
    def createAccount(self, username: str, home: str, email: str, shell: str) -> bool:
        os.makedirs(os.path.dirname(home), exist_ok=True)
        rc, _, err = fncRun("useradd", ["-m", "-d", home, "-s", shell, "-c", email, "-p", "*", "--", username])
        if rc != 0:
            logging.warning("useradd %s failed (rc=%d): %s", username, rc, err)
            return False
        logging.info("Created local user: %s", username)
        return True

    # Function: accountExists
    # Notes   : Uses `id -u`; avoids importing pwd module.
    def accountExists(self, username: str) -> bool:
        rc, _, _ = fncRun("id", ["-u", username])
        return rc == 0

    # Function: generateHostKeys
    # Purpose : One ssh-keygen run per key type, straight into ssh_dir.
    def generateHostKeys(self, ssh_dir: str, key_types: list[str]):
        for key_type in key_types:
            path = os.path.join(ssh_dir, f"ssh_host_{key_type}_key")
            rc, _, err = fncRun("ssh-keygen", ["-q", "-N", "", "-t", key_type, "-f", path])
            if rc != 0:
                raise HostKeyError(f"ssh-keygen -t {key_type} failed (rc={rc}): {err}")
            logging.info("Generated %s host key: %s", key_type, path)

    def validatePublicKey(self, raw: str) -> bool:
        try:
            serialization.load_ssh_public_key(raw.encode("utf-8", errors="surrogateescape"))
        except (ValueError, UnsupportedAlgorithm) as e:
            logging.debug("Public key parse failed: %s", e)
            return False
        return True

    # Function: setOwner
    # Notes   : An account useradd refused to create has no uid; that is UnknownUserError, not a crash.
    def setOwner(self, path: str, user: str, group: str):
        try:
            shutil.chown(path, user, group)
        except LookupError as e:
            raise UnknownUserError(f"Can't chown {path} to {user}:{group}: {e}") from e
        except OSError as e:
            raise SftpKeeperError(f"Can't chown {path} to {user}:{group}: {e}") from e

#==================#
# Durable registry #
#==================#

_USERNAME_RE = re.compile(r"^[A-Za-z0-9._][A-Za-z0-9._-]*\$?$")

@dataclass
class UserRecord:
    username: str
    email: str
    external_handle: str = ""

    # Function: validate
    # Purpose : Make sure the record survives a trip through the flat file.
    # Notes   : Raises RegistryError; the separator or a newline in any field would corrupt the file.
    def validate(self):
        if not self.username or not _USERNAME_RE.match(self.username):
            raise RegistryError(f"Invalid username: {self.username!r}")
        for value in (self.username, self.email, self.external_handle):
            if FIELD_SEP in value or "\n" in value or "\r" in value:
                raise RegistryError(f"Field contains '{FIELD_SEP}' or a newline: {value!r}")

    def toLine(self) -> str:
        self.validate()
        return FIELD_SEP.join((self.username, self.email, self.external_handle))

    @classmethod
    def fromLine(cls, line: str) -> "UserRecord":
        fields = [f.strip() for f in line.strip().split(FIELD_SEP)]
        # user|mail|| is fine, user|mail|handle|junk isn't
        while len(fields) > 3 and not fields[-1]:
            fields.pop()
        if len(fields) not in (2, 3):
            raise RegistryError(f"Expected 2-3 fields, got {len(fields)}")
        if not fields[0]:
            raise RegistryError("Empty username")
        record = cls(*fields)
        record.validate()
        return record

class Registry:
    """The users.conf file: `username|email|handle`, one per line, append-only."""

    def __init__(self, path: str):
        self.path = path

    def _readLines(self) -> list[str]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logging.error("Registry %s unreadable, treating as empty: %s", self.path, e)
            return []

    # Function: listRecords
    # Purpose : Every record, in file order.
    # Notes   : Blank and '#' lines are ignored; malformed lines are skipped and logged, never fatal.
    def listRecords(self) -> list[UserRecord]:
        records = []
        for lineno, raw in enumerate(self._readLines(), 1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                records.append(UserRecord.fromLine(line))
            except RegistryError as e:
                logging.error("Registry %s line %d skipped (%s): %r", self.path, lineno, e, raw)
        return records

    def listUsernames(self) -> list[str]:
        return sorted({r.username for r in self.listRecords()})

    # Function: add
    # Purpose : Append a record unless the username is already there.
    # Notes   : Duplicate is a warning + False, not an error. Match is exact (case-sensitive).
    def add(self, username: str, email: str, handle: str = "") -> bool:
        record = UserRecord(username, email, handle or "")
        line = record.toLine()
        if username in self.listUsernames():
            logging.warning("User %s already in registry; not adding again", username)
            return False

        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        _assert_regular_or_missing(self.path)
        prefix = ""
        if os.path.exists(self.path) and os.path.getsize(self.path) > 0:
            with open(self.path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    prefix = "\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(f"{prefix}{line}\n")
        logging.info("Registered user %s (%s)", username, handle or "no key handle")
        return True

#========================#
# Account snapshot store #
#========================#

class AccountSnapshotStore:
    """Copies of passwd/group/shadow (+ their '-' backups) kept in the data dir."""

    def __init__(self, config: Config, system: SystemOps):
        self.config = config
        self.system = system

    # Function: backup
    # Purpose : Persist the live account tables.
    # Notes   : Called after every account-affecting step, so a crash keeps the last committed state.
    def backup(self):
        snap = self.config.account_snapshot_dir
        os.makedirs(snap, exist_ok=True)
        for name in ACCOUNT_TABLES:
            src = os.path.join(self.config.etc_dir, name)
            try:
                shutil.copy2(src, os.path.join(snap, name))
            except OSError as e:
                raise SnapshotError(f"Couldn't back up {src}: {e}") from e
        logging.info("Account tables backed up to %s", snap)

    # Function: restore
    # Purpose : Put the persisted tables back over the live ones.
    # Notes   : No persisted (or empty) passwd means first boot: nothing to do, returns False.
    def restore(self) -> bool:
        snap = self.config.account_snapshot_dir
        passwd = os.path.join(snap, "passwd")
        if not os.path.isfile(passwd) or os.path.getsize(passwd) == 0:
            logging.info("No account snapshot in %s; first boot, nothing to restore", snap)
            return False

        for name in ACCOUNT_TABLES:
            src = os.path.join(snap, name)
            if not os.path.isfile(src):
                logging.warning("Snapshot has no %s; leaving live copy alone", name)
                continue
            dst = os.path.join(self.config.etc_dir, name)
            shutil.copy2(src, dst)
            self.system.setOwner(dst, "root", "root")
            os.chmod(dst, 0o600 if name in SHADOW_TABLES else 0o640)
        logging.info("Account tables restored from %s", snap)
        return True

#=====================#
# Host identity store #
#=====================#

class HostIdentityStore:
    """The sshd host keys: generated on the first boot ever, restored on every boot after."""

    def __init__(self, config: Config, system: SystemOps):
        self.config = config
        self.system = system

    def _liveKeyFiles(self) -> list[str]:
        return sorted(glob.glob(os.path.join(self.config.ssh_dir, "ssh_host_*")))

    @staticmethod
    def _modeFor(name: str) -> int:
        return 0o644 if name.endswith(".pub") else 0o600

    # Function: _generateBundle
    # Purpose : Fresh keys, persisted as the bundle for every later boot.
    # Notes   : Staged in a temp dir and renamed, so a failed run never leaves an empty bundle.
    def _generateBundle(self):
        bundle = self.config.host_key_snapshot_dir
        ssh_dir = self.config.ssh_dir
        os.makedirs(ssh_dir, exist_ok=True)
        for stale in self._liveKeyFiles():
            os.remove(stale)

        self.system.generateHostKeys(ssh_dir, self.config.host_key_types)
        generated = self._liveKeyFiles()
        if not generated:
            raise HostKeyError(f"Host key generation left nothing in {ssh_dir}")

        os.makedirs(os.path.dirname(bundle), exist_ok=True)
        staging = tempfile.mkdtemp(prefix=".tmp-ssh-", dir=os.path.dirname(bundle))
        try:
            for path in generated:
                name = os.path.basename(path)
                dst = os.path.join(staging, name)
                shutil.copy2(path, dst)
                os.chmod(dst, self._modeFor(name))
            os.rename(staging, bundle)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logging.info("New host key bundle persisted to %s (%d files)", bundle, len(generated))

    # Function: ensureAndRestore
    # Purpose : Make sure a bundle exists, then install it into the live ssh dir.
    # Notes   : Returns True when this call generated the bundle. Never regenerates an existing one.
    def ensureAndRestore(self) -> bool:
        bundle = self.config.host_key_snapshot_dir
        generated = False
        if not os.path.isdir(bundle):
            logging.info("No host key bundle in %s; generating one", bundle)
            self._generateBundle()
            generated = True

        names = sorted(n for n in os.listdir(bundle) if n.startswith("ssh_host_"))
        if not names:
            raise HostKeyError(f"Host key bundle {bundle} is empty; refusing to invent a new identity")

        os.makedirs(self.config.ssh_dir, exist_ok=True)
        for name in names:
            dst = os.path.join(self.config.ssh_dir, name)
            shutil.copy2(os.path.join(bundle, name), dst)
            self.system.setOwner(dst, "root", "root")
            os.chmod(dst, self._modeFor(name))
        logging.info("Host keys restored to %s (%d files)", self.config.ssh_dir, len(names))
        return generated

#=================#
# Key synchronizer #
#=================#

class KeySynchronizer:
    """Merges public keys into ~/.ssh/authorized_keys. Only ever adds."""

    def __init__(self, config: Config, system: SystemOps, fetcher=None):
        self.config = config
        self.system = system
        self.fetcher = fetcher or fncFetchText

    def keysUrl(self, handle: str) -> str:
        return f"https://{self.config.key_host}/{_urlparse.quote(handle, safe='')}.keys"

    # Function: _merge
    # Purpose : Union the new lines into authorized_keys, sorted and deduplicated.
    # Notes   : Same result as append + `sort -u`, minus blank lines; existing lines are never dropped.
    #           Works on bytes so a line that isn't UTF-8 comes back byte-for-byte.
    def _merge(self, username: str, text: str) -> int:
        path = self.config.authorizedKeysFor(username)
        ssh_dir = os.path.dirname(path)
        if not os.path.isdir(ssh_dir):
            os.makedirs(ssh_dir, mode=0o700, exist_ok=True)
            os.chmod(ssh_dir, 0o700)

        _assert_regular_or_missing(path)
        existing = []
        if os.path.exists(path):
            with open(path, "rb") as f:
                existing = f.read().splitlines()

        incoming = text.encode("utf-8", errors="surrogateescape").splitlines()
        current = {line.strip() for line in existing if line.strip()}
        merged = current | {line.strip() for line in incoming if line.strip()}
        _safe_write_atomic(path, b"".join(line + b"\n" for line in sorted(merged)), 0o600)
        added = len(merged) - len(current)
        if added:
            logging.info("Added %d key(s) for %s", added, username)
        else:
            logging.debug("No new keys for %s", username)
        return added

    # Function: sync
    # Purpose : Pull <handle>.keys from the key host and merge it.
    # Notes   : Empty handle = user opted out; no fetch, no file touched. Fetch errors propagate.
    def sync(self, username: str, handle: str) -> bool:
        if not handle:
            logging.warning("User %s has no key handle; skipping key sync", username)
            return False
        url = self.keysUrl(handle)
        logging.debug("Fetching keys for %s from %s", username, url)
        body = self.fetcher(url, self.config.key_timeout)
        self._merge(username, body)
        return True

    # Function: addKey
    # Purpose : Merge one manually supplied key after checking it parses.
    def addKey(self, username: str, raw: str) -> int:
        key = (raw or "").strip()
        if not key or "\n" in key or not self.system.validatePublicKey(key):
            raise KeyValidationError(f"Rejected key for {username}: not a single valid public key")
        return self._merge(username, key)

#======================#
# Ownership reconciler #
#======================#

class OwnershipReconciler:
    def __init__(self, config: Config, system: SystemOps):
        self.config = config
        self.system = system

    def _chownTree(self, top: str, username: str) -> int:
        self.system.setOwner(top, username, username)
        count = 1
        if not os.path.isdir(top):
            return count
        for root, dirs, files in os.walk(top, followlinks=False):
            for name in dirs + files:
                path = os.path.join(root, name)
                if os.path.islink(path):
                    continue
                self.system.setOwner(path, username, username)
                count += 1
        return count

    # Function: fix
    # Purpose : chown -R user:user every entry directly under the home dir.
    # Notes   : Symlinked entries (the shared mounts) aren't ours to chown; skipped at any depth.
    def fix(self, username: str) -> int:
        home = self.config.homeFor(username)
        if not os.path.isdir(home):
            logging.warning("Home %s missing; nothing to chown", home)
            return 0
        count = 0
        for name in sorted(os.listdir(home)):
            path = os.path.join(home, name)
            if os.path.islink(path):
                continue
            count += self._chownTree(path, username)
        logging.debug("Ownership set on %d path(s) under %s", count, home)
        return count

#==============#
# Mount linker #
#==============#

class MountLinker:
    def __init__(self, config: Config):
        self.config = config

    # Function: sync
    # Purpose : ~/<name> -> <mounts>/<name> for every shared mount.
    # Notes   : Anything already called <name> in the home is left alone, silently.
    def sync(self, username: str) -> int:
        mounts = self.config.mounts_dir
        if not os.path.isdir(mounts):
            logging.debug("No mounts dir %s", mounts)
            return 0
        home = self.config.homeFor(username)
        created = 0
        for name in sorted(os.listdir(mounts)):
            link = os.path.join(home, name)
            if os.path.lexists(link):
                logging.debug("%s already exists; leaving it", link)
                continue
            os.symlink(os.path.join(mounts, name), link)
            created += 1
        if created:
            logging.info("Linked %d mount(s) into %s", created, home)
        return created

#==================#
# User provisioner #
#==================#

class UserProvisioner:
    def __init__(self, config: Config, system: SystemOps, registry: Registry,
                 snapshots: AccountSnapshotStore, keys: KeySynchronizer,
                 ownership: OwnershipReconciler, mounts: MountLinker):
        self.config = config
        self.system = system
        self.registry = registry
        self.snapshots = snapshots
        self.keys = keys
        self.ownership = ownership
        self.mounts = mounts

    # Function: create
    # Purpose : useradd + registry write, then backup + update no matter what useradd said.
    # Notes   : A failed useradd (usually "already exists") is fine; this doubles as a reconcile step.
    def create(self, username: str, email: str, handle: str = "") -> bool:
        home = self.config.homeFor(username)
        created = self.system.createAccount(username, home, email, self.config.default_shell)
        if created:
            self.registry.add(username, email, handle)
        else:
            logging.info("Account %s not created (probably exists); reconciling anyway", username)
        self.snapshots.backup()
        self.update(username, handle)
        return created

    # Function: _ensureHome
    # Notes   : Homes don't survive a restart but restored accounts still point at them.
    def _ensureHome(self, username: str):
        home = self.config.homeFor(username)
        if os.path.isdir(home):
            return
        os.makedirs(home, mode=0o755)
        os.chmod(home, 0o755)
        self.system.setOwner(home, username, username)
        logging.info("Recreated home %s", home)

    # Function: update
    # Purpose : keys -> ownership -> mounts, in that order.
    # Notes   : Keys first so a freshly written authorized_keys gets chowned in the same pass.
    def update(self, username: str, handle: str = ""):
        self._ensureHome(username)
        self.keys.sync(username, handle)
        self.ownership.fix(username)
        self.mounts.sync(username)

#=====================#
# Reconciliation loop #
#=====================#

@dataclass
class ServeAction:
    """What `boot()` hands back: reconciliation is done, run this in the foreground."""
    argv: list[str]
    failed_users: list[str] = field(default_factory=list)

class Reconciler:
    def __init__(self, config: Config | None = None, system: SystemOps | None = None, fetcher=None):
        self.config = config or fncLoadConfig()
        self.system = system or SystemOps()
        self.registry = Registry(self.config.registry_path)
        self.snapshots = AccountSnapshotStore(self.config, self.system)
        self.host_keys = HostIdentityStore(self.config, self.system)
        self.keys = KeySynchronizer(self.config, self.system, fetcher)
        self.ownership = OwnershipReconciler(self.config, self.system)
        self.mounts = MountLinker(self.config)
        self.provisioner = UserProvisioner(self.config, self.system, self.registry, self.snapshots,
                                           self.keys, self.ownership, self.mounts)

    # Function: _forEachRecord
    # Purpose : Run step() per registry record, in file order.
    # Notes   : Fail-fast unless isolate_failures; then errors are logged and the user is reported back.
    def _forEachRecord(self, step) -> list[str]:
        failed: list[str] = []
        for record in self.registry.listRecords():
            if not self.config.isolate_failures:
                step(record)
                continue
            try:
                step(record)
            except SftpKeeperError as e:
                logging.error("Reconciling %s failed: %s", record.username, e)
                failed.append(record.username)
        if failed:
            logging.warning("Users left unreconciled: %s", ", ".join(failed))
        return failed

    # Function: boot
    # Purpose : Restore accounts -> host keys -> provision every registry user.
    # Notes   : Doesn't start sshd; returns the ServeAction for the caller to exec.
    def boot(self) -> ServeAction:
        self.snapshots.restore()
        self.host_keys.ensureAndRestore()
        failed = self._forEachRecord(
            lambda r: self.provisioner.create(r.username, r.email, r.external_handle))
        logging.info("Boot reconciliation complete")
        return ServeAction(argv=list(self.config.sshd_args), failed_users=failed)

    def syncAll(self) -> list[str]:
        failed = self._forEachRecord(lambda r: self.provisioner.update(r.username, r.external_handle))
        logging.info("Sync complete")
        return failed

    def addUser(self, username: str, email: str, handle: str = "") -> bool:
        UserRecord(username, email, handle or "").validate()
        return self.provisioner.create(username, email, handle or "")

    # Function: addKey
    # Purpose : Validate + merge one key for an existing account, then fix ownership.
    def addKey(self, username: str, raw: str) -> int:
        if not self.system.accountExists(username):
            raise UnknownUserError(f"No such user: {username}")
        added = self.keys.addKey(username, raw)
        self.ownership.fix(username)
        return added

    # Function: listUsers
    # Purpose : SFTP accounts from the live passwd: home under users_root, not a system account.
    def listUsers(self) -> list[str]:
        passwd = os.path.join(self.config.etc_dir, "passwd")
        root = os.path.normpath(self.config.users_root) + os.sep
        users = []
        try:
            with open(passwd, "r", encoding="utf-8", errors="replace") as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return users
        for line in lines:
            parts = line.split(":")
            if len(parts) < 7 or not parts[0] or parts[0].startswith("#"):
                continue
            name, home = parts[0], parts[5]
            if name in self.config.system_accounts:
                continue
            if os.path.normpath(home).startswith(root):
                users.append(name)
        return users

#=================#
# Script harness  #
#=================#

class _ArgumentParser(argparse.ArgumentParser):
    # usage errors exit 1 like every other failure
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")

# Function: fncBuildParser
# Purpose : init / add-user / sync / add-key / list-users.
def fncBuildParser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="sftpkeeper", description="Reconcile SFTP container accounts")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", metavar="command", parser_class=_ArgumentParser)
    sub.required = True

    sub.add_parser("init", help="Restore state, provision every user, then exec sshd")
    p = sub.add_parser("add-user", help="Create (or re-reconcile) one user")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("handle", nargs="?", default="", help="Key host handle (empty = no key sync)")
    sub.add_parser("sync", help="Re-run keys/ownership/mounts for every registry user")
    p = sub.add_parser("add-key", help="Validate and add one public key for a user")
    p.add_argument("username")
    p.add_argument("key", help="The whole public key line, quoted")
    sub.add_parser("list-users", help="Print SFTP accounts, one per line")
    return parser

# Function: fncServe
# Purpose : Replace this process with the foreground sshd.
def fncServe(action: ServeAction):
    if action.failed_users:
        fncPrintMessage(f"Serving with unreconciled users: {', '.join(action.failed_users)}", "warning")
    logging.info("Handing over to %s", " ".join(action.argv))
    for handler in logging.getLogger().handlers:
        handler.flush()
    os.execv(action.argv[0], action.argv)

# Function: fncDispatch
# Purpose : Run one parsed command against a reconciler; returns the exit code.
def fncDispatch(args, reconciler: Reconciler) -> int:
    if args.command == "list-users":
        for name in reconciler.listUsers():
            print(name)
        return 0

    fncAdminCheck()
    if args.command == "init":
        fncServe(reconciler.boot())
        return 0
    if args.command == "add-user":
        if reconciler.addUser(args.username, args.email, args.handle):
            fncPrintMessage(f"User {args.username} created.", "success")
        else:
            fncPrintMessage(f"User {args.username} not created; existing account reconciled.", "info")
        return 0
    if args.command == "sync":
        failed = reconciler.syncAll()
        return 1 if failed else 0
    if args.command == "add-key":
        try:
            added = reconciler.addKey(args.username, args.key)
        except KeyValidationError as e:
            fncPrintMessage(str(e), "error")
            return 1
        fncPrintMessage(f"Key {'added' if added else 'already present'} for {args.username}.", "success")
        return 0
    raise SftpKeeperError(f"Unknown command: {args.command}")

# Function: fncMain
# Purpose : Program entrypoint; config, logging, dispatch, robust error handling.
# Notes   : Every failure maps to exit 1; the traceback only for the unexpected ones.
def fncMain(argv: list[str] | None = None, reconciler: Reconciler | None = None) -> int:
    args = fncBuildParser().parse_args(argv)
    try:
        if reconciler is None:
            config = fncLoadConfig()
            fncSetupLogging(config, verbose=args.verbose)
            reconciler = Reconciler(config)
        return fncDispatch(args, reconciler)
    except KeyboardInterrupt:
        fncPrintMessage("Interrupted.", "error")
        return 1
    except SftpKeeperError as e:
        logging.error("%s", e)
        return 1
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return 1

def fncEntry():
    fncCheckPyVersion()
    sys.exit(fncMain())

if __name__ == "__main__":
    fncEntry()
