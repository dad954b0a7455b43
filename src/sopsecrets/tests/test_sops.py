import pathlib
import shutil
import subprocess

import mock
import pytest
import yaml

from sopsecrets import PreconditionError, SopsCallError, SopsNotFound
from sopsecrets.keys import KeyAcquisition
from sopsecrets.operations import Decrypt, Init, Rekey, Rotate
from sopsecrets.sops import Sops, creation_rules, replacing, sops_config

ENVIRON = {
    "PATH": "/usr/bin",
    "SOPS_AGE_KEY": "inherited",
    "SOPS_AGE_KEY_CMD": "inherited",
}


@pytest.fixture
def sops_run():
    """Record sops invocations together with the config file they got."""
    calls = []

    def run(args, **kw):
        config = pathlib.Path(args[args.index("--config") + 1])
        calls.append((args, kw, yaml.safe_load(config.read_text())))
        return subprocess.CompletedProcess(args, 0, b"cleartext", b"")

    with mock.patch("sopsecrets.sops.subprocess.run", side_effect=run) as m:
        m.calls = calls
        yield m


def test_creation_rules(keys):
    assert creation_rules([keys["alice"]]) == {
        "creation_rules": [
            {"path_regex": ".*", "key_groups": [{"age": [keys["alice"]]}]}
        ]
    }


def test_sops_config_lists_recipients_sorted(config, keys):
    assert sops_config(config["api-key"]) == (
        "creation_rules:\n"
        "- path_regex: .*\n"
        "  key_groups:\n"
        "  - age:\n"
        "    - {}\n"
        "    - {}\n".format(keys["alice"], keys["bob"])
    )


def test_sops__encrypt_arguments(config, sops_run, tmp_path, keys):
    sops = Sops(config["api-key"], "/opt/bin/sops", ENVIRON)
    assert sops.encrypt(tmp_path / "plain") == b"cleartext"
    ((args, kw, rules),) = sops_run.calls
    assert args[0] == "/opt/bin/sops"
    assert args[3:] == [
        "--input-type",
        "json",
        "--output-type",
        "json",
        "-e",
        str(tmp_path / "plain"),
    ]
    assert rules["creation_rules"][0]["key_groups"] == [
        {"age": [keys["alice"], keys["bob"]]}
    ]
    assert kw["env"] == {"PATH": "/usr/bin"}
    assert kw["check"]


def test_sops__encrypt_streams_to_output_file(config, sops_run, tmp_path):
    sops = Sops(config["db-password"], environ=ENVIRON)
    assert sops.encrypt("plain", tmp_path / "out") is None
    ((args, kw, _),) = sops_run.calls
    assert args[3:7] == ["--input-type", "binary", "--output-type", "binary"]
    assert str(kw["stdout"].name) == str(tmp_path / "out")


def test_sops__config_file_is_removed(config, sops_run):
    Sops(config["db-password"], environ=ENVIRON).encrypt("plain")
    args = sops_run.calls[0][0]
    assert not pathlib.Path(args[args.index("--config") + 1]).exists()


def test_sops__decrypt_exports_exactly_one_key(config, sops_run):
    key = KeyAcquisition("SOPS_AGE_KEY_FILE", "/keys/alice.txt", "test")
    sops = Sops(config["db-password"], environ=ENVIRON)
    assert sops.decrypt("secrets/db-password", key) == b"cleartext"
    ((args, kw, _),) = sops_run.calls
    assert args[-2:] == ["-d", "secrets/db-password"]
    assert kw["env"] == {
        "PATH": "/usr/bin",
        "SOPS_AGE_KEY_FILE": "/keys/alice.txt",
    }
    assert "/keys/alice.txt" not in args


def test_sops__rotate_and_updatekeys(config, sops_run):
    key = KeyAcquisition("SOPS_AGE_KEY", "AGE-SECRET-KEY-1X", "test")
    sops = Sops(config["db-password"], environ=ENVIRON)
    sops.rotate("out/db-password", key)
    sops.updatekeys("out/db-password", key)
    assert sops_run.calls[0][0][-3:] == ["rotate", "-i", "out/db-password"]
    assert sops_run.calls[1][0][-3:] == ["updatekeys", "-y", "out/db-password"]
    assert "AGE-SECRET-KEY-1X" not in sops_run.calls[0][0]


def test_sops__call_error(config):
    error = subprocess.CalledProcessError(
        128, ["sops", "-d", "x"], stderr=b"Failed to get the data key"
    )
    with mock.patch("sopsecrets.sops.subprocess.run", side_effect=error):
        with pytest.raises(SopsCallError) as e:
            Sops(config["db-password"], environ=ENVIRON).run(["-d", "x"])
    assert e.value.exitcode == "128"
    assert e.value.command == "sops -d x"
    assert str(e.value) == (
        "Exitcode 128 while calling: sops -d x\nFailed to get the data key"
    )


def test_sops__not_found(config):
    sops = Sops(config["db-password"], "/nonexistent/sops", ENVIRON)
    with pytest.raises(SopsNotFound) as e:
        sops.run(["--version"])
    assert "/nonexistent/sops" in str(e.value)


def test_sops__filestatus(config):
    sops = Sops(config["db-password"], environ=ENVIRON)
    result = subprocess.CompletedProcess([], 0, b'{"encrypted": true}', b"")
    with mock.patch("sopsecrets.sops.subprocess.run", return_value=result):
        assert sops.filestatus("secrets/db-password")
    result.stdout = b'{"encrypted": false}'
    with mock.patch("sopsecrets.sops.subprocess.run", return_value=result):
        assert not sops.filestatus("secrets/db-password")
    error = subprocess.CalledProcessError(1, ["sops"], stderr=b"")
    with mock.patch("sopsecrets.sops.subprocess.run", side_effect=error):
        assert not sops.filestatus("secrets/db-password")


def test_replacing__new_file(tmp_path):
    path = tmp_path / "secret"
    with replacing(path) as backup:
        assert backup is None
        path.write_text("new")
    assert path.read_text() == "new"


def test_replacing__removes_backup_on_success(tmp_path):
    path = tmp_path / "secret"
    path.write_text("old")
    with replacing(path) as backup:
        assert backup.parent == tmp_path
        assert backup.name.startswith("secret.")
        assert backup.name.endswith(".old")
        assert backup.read_text() == "old"
        assert not path.exists()
        path.write_text("new")
    assert path.read_text() == "new"
    assert not backup.exists()


def test_replacing__keeps_unrelated_old_file(tmp_path):
    """It never reuses a `.old` file that was already there."""
    path = tmp_path / "secret"
    path.write_text("old")
    (tmp_path / "secret.old").write_text("precious")
    with replacing(path) as backup:
        assert backup != tmp_path / "secret.old"
        path.write_text("new")
    assert (tmp_path / "secret.old").read_text() == "precious"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["secret", "secret.old"]

    with pytest.raises(RuntimeError):
        with replacing(path):
            raise RuntimeError()
    assert path.read_text() == "new"
    assert (tmp_path / "secret.old").read_text() == "precious"


def test_replacing__restores_on_failure(tmp_path):
    path = tmp_path / "secret"
    path.write_text("old")
    with pytest.raises(RuntimeError):
        with replacing(path):
            path.write_text("partial")
            raise RuntimeError()
    assert path.read_text() == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["secret"]


def test_replacing__refuses_directory(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    (path / "keep.txt").write_text("keep")
    with pytest.raises(PreconditionError) as e:
        with replacing(path):
            pytest.fail("body must not run")
    assert e.value.message == "Not a regular file: {}".format(path)
    assert (path / "keep.txt").read_text() == "keep"
    assert [p.name for p in tmp_path.iterdir()] == ["out"]


def test_replacing__removes_partial_file_on_failure(tmp_path):
    path = tmp_path / "secret"
    with pytest.raises(KeyboardInterrupt):
        with replacing(path):
            path.write_text("partial")
            raise KeyboardInterrupt()
    assert not path.exists()


@pytest.mark.skipif(shutil.which("sops") is None, reason="sops not installed")
def test_sops__round_trip(config, identities, tmp_path):
    """It works with the real sops binary."""
    source = tmp_path / "plain.json"
    source.write_text('{"token": "abc"}')
    environ = {"PATH": shutil.which("sops").rsplit("/", 1)[0]}
    secret = config["api-key"]

    Init(config, secret, input=str(source), environ=environ).execute()
    assert b"abc" not in secret.path.read_bytes()

    alice = dict(environ, ALICE__AGE_KEY=str(identities["alice"]))
    stdout = tmp_path / "stdout"
    with open(stdout, "wb") as f:
        reloaded = type(config).load(config.path)
        Decrypt(reloaded, reloaded["api-key"], environ=alice, stdout=f).execute()
    assert stdout.read_text() == '{\n  "token": "abc"\n}\n'

    bob = dict(environ, BOB__AGE_KEY=str(identities["bob"]))
    Rotate(reloaded, reloaded["api-key"], environ=bob).execute()
    Rekey(reloaded, reloaded["api-key"], environ=bob).execute()
    with open(stdout, "wb") as f:
        Decrypt(reloaded, reloaded["api-key"], environ=bob, stdout=f).execute()
    assert stdout.read_text() == '{\n  "token": "abc"\n}\n'
