"""
Pytest configuration and fixtures for sftpkeeper tests.

Every path the reconciler touches is redirected under tmp_path, and the OS
side (useradd, ssh-keygen, chown) is replaced by FakeSystem.
"""

import os
import shutil

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

import sftpkeeper

BASE_TABLES = {
    "passwd": "root:x:0:0:root:/root:/bin/sh\nsshd:x:22:22:sshd:/run/sshd:/usr/sbin/nologin\n",
    "group": "root:x:0:\nsshd:x:22:\n",
    "shadow": "root:*:19000:0:99999:7:::\nsshd:!:19000::::::\n",
}


def seed_etc(etc_dir):
    """Lay down the account tables a fresh container image ships with."""
    os.makedirs(etc_dir, exist_ok=True)
    for name, content in BASE_TABLES.items():
        for variant in (name, name + "-"):
            with open(os.path.join(etc_dir, variant), "w") as f:
                f.write(content)


class FakeSystem(sftpkeeper.SystemOps):
    """Records what would have been done; useradd is simulated on the sandbox passwd."""

    def __init__(self, config):
        self.config = config
        self.calls = []
        self.owners = {}
        self.keygen_runs = 0
        self.fail_keygen = False

    def _passwdNames(self):
        with open(os.path.join(self.config.etc_dir, "passwd")) as f:
            return {line.split(":")[0] for line in f if line.strip()}

    def createAccount(self, username, home, email, shell):
        self.calls.append(("createAccount", username))
        if username in self._passwdNames():
            return False
        os.makedirs(home, exist_ok=True)
        rows = {
            "passwd": f"{username}:x:1000:1000:{email}:{home}:{shell}\n",
            "group": f"{username}:x:1000:\n",
            "shadow": f"{username}:*:19000:0:99999:7:::\n",
        }
        for table, row in rows.items():
            path = os.path.join(self.config.etc_dir, table)
            shutil.copyfile(path, path + "-")
            with open(path, "a") as f:
                f.write(row)
        return True

    def accountExists(self, username):
        return username in self._passwdNames()

    def generateHostKeys(self, ssh_dir, key_types):
        self.keygen_runs += 1
        if self.fail_keygen:
            raise sftpkeeper.HostKeyError("ssh-keygen exploded")
        for key_type in key_types:
            base = os.path.join(ssh_dir, f"ssh_host_{key_type}_key")
            with open(base, "w") as f:
                f.write(f"PRIVATE {key_type} {os.urandom(16).hex()}\n")
            with open(base + ".pub", "w") as f:
                f.write(f"ssh-{key_type} {os.urandom(16).hex()} root@test\n")

    def setOwner(self, path, user, group):
        self.calls.append(("setOwner", path, user, group))
        self.owners[path] = (user, group)


class FakeFetcher:
    """Stands in for fncFetchText: url -> body, or an exception to raise."""

    def __init__(self):
        self.responses = {}
        self.urls = []

    def __call__(self, url, timeout):
        self.urls.append(url)
        response = self.responses.get(url)
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise sftpkeeper.KeyFetchError(f"GET {url} returned HTTP 404")
        return response


@pytest.fixture
def config(tmp_path):
    """A Config with every directory inside tmp_path."""
    cfg = sftpkeeper.Config(
        data_dir=str(tmp_path / "data"),
        mounts_dir=str(tmp_path / "mounts"),
        users_root=str(tmp_path / "home"),
        etc_dir=str(tmp_path / "etc"),
        ssh_dir=str(tmp_path / "etc" / "ssh"),
        log_file="",
    )
    seed_etc(cfg.etc_dir)
    os.makedirs(cfg.mounts_dir)
    os.makedirs(cfg.users_root)
    return cfg


@pytest.fixture
def system(config):
    return FakeSystem(config)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def reconciler(config, system, fetcher):
    return sftpkeeper.Reconciler(config, system, fetcher)


@pytest.fixture
def make_key():
    """Returns a function producing a real OpenSSH ed25519 public key line."""
    def _make(comment="test@example.com"):
        public = ed25519.Ed25519PrivateKey.generate().public_key()
        line = public.public_bytes(
            serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
        ).decode()
        return f"{line} {comment}"
    return _make
