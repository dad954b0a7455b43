import base64
import pathlib
import textwrap

import pyrage
import pytest

from sopsecrets import SopsCallError
from sopsecrets._output import NullBackend, output
from sopsecrets.config import SecretsConfig


@pytest.fixture(autouse=True)
def reset_output():
    backend, debug = output.backend, output.enable_debug
    output.backend = NullBackend()
    output.enable_debug = False
    yield
    output.backend, output.enable_debug = backend, debug


@pytest.fixture(scope="session")
def identities():
    return {
        name: pyrage.x25519.Identity.generate()
        for name in ["alice", "bob", "server1"]
    }


@pytest.fixture(scope="session")
def keys(identities):
    """Public keys of the test identities."""
    return {name: str(i.to_public()) for name, i in identities.items()}


@pytest.fixture
def project(tmp_path):
    (tmp_path / "secrets").mkdir()
    return tmp_path


@pytest.fixture
def write_config(project, keys):
    """Write a secrets.cfg into the project and load it.

    The placeholders `{alice}`, `{bob}` and `{server1}` are replaced with
    the public keys of the test identities.

    """

    def write(content):
        path = project / "secrets.cfg"
        path.write_text(textwrap.dedent(content).format(**keys))
        return SecretsConfig.load(path)

    return write


@pytest.fixture
def config(write_config):
    return write_config(
        """\
        [recipient:alice]
        key = {alice}
        decrypt_command = cat ~/.age/alice.txt

        [recipient:bob]
        key = {bob}

        [secret:api-key]
        dir = secrets
        format = json
        recipients = alice, bob

        [secret:db-password]
        dir = secrets
        recipients = alice
        """
    )


class FakeSops(object):
    """Stands in for the sops binary.

    "Encryption" is base64 with a marker, so the tests can check what
    was encrypted. Every call is recorded together with the key used.

    """

    PREFIX = b"ENC:"

    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail or set()

    def _check(self, name, args):
        if name in self.fail:
            raise SopsCallError.from_context(
                ["sops", name], 1, b"simulated failure"
            )

    def encrypt(self, input_path, output_path=None):
        self.calls.append(("encrypt", str(input_path), None))
        with open(input_path, "rb") as f:
            ciphertext = self.PREFIX + base64.b64encode(f.read())
        if output_path is None:
            self._check("encrypt", input_path)
            return ciphertext
        with open(output_path, "wb") as f:
            f.write(ciphertext[: len(ciphertext) // 2])
            self._check("encrypt", input_path)
            f.write(ciphertext[len(ciphertext) // 2 :])
        return None

    def decrypt(self, input_path, key):
        self.calls.append(("decrypt", str(input_path), key))
        self._check("decrypt", input_path)
        return self.plaintext(input_path)

    def rotate(self, path, key):
        self.calls.append(("rotate", str(path), key))
        self._check("rotate", path)
        self._rewrite(path)

    def updatekeys(self, path, key):
        self.calls.append(("updatekeys", str(path), key))
        self._check("updatekeys", path)
        self._rewrite(path)

    def _rewrite(self, path):
        content = self.plaintext(path)
        pathlib.Path(path).write_bytes(self.PREFIX + base64.b64encode(content))

    @classmethod
    def plaintext(cls, path):
        data = pathlib.Path(path).read_bytes()
        assert data.startswith(cls.PREFIX), data
        return base64.b64decode(data[len(cls.PREFIX) :])

    @classmethod
    def write_encrypted(cls, path, content: bytes):
        pathlib.Path(path).write_bytes(cls.PREFIX + base64.b64encode(content))


@pytest.fixture
def fake_sops():
    return FakeSops()


class RecordingBackend(object):
    def __init__(self):
        self.lines = []

    def line(self, message, **format):
        self.lines.append(message)

    def write(self, content, **format):
        self.lines.append(content)


@pytest.fixture
def messages():
    """Everything reported through `output` during the test."""
    backend = RecordingBackend()
    output.backend = backend
    return backend.lines
