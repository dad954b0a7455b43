import contextlib
import json
import os
import pathlib
import subprocess
import tempfile
from typing import List, Mapping, Optional

import yaml

from sopsecrets import PreconditionError, SopsCallError, SopsNotFound
from sopsecrets._output import output
from sopsecrets.keys import GLOBAL_VARIABLES, KeyAcquisition


def creation_rules(public_keys: List[str], path_regex: str = ".*") -> dict:
    return {
        "creation_rules": [
            {
                "path_regex": path_regex,
                "key_groups": [{"age": list(public_keys)}],
            }
        ]
    }


def sops_config(secret) -> str:
    """Render the sops configuration listing the secret's recipients."""
    return yaml.safe_dump(
        creation_rules(secret.public_keys),
        default_flow_style=False,
        sort_keys=False,
    )


@contextlib.contextmanager
def replacing(path: pathlib.Path):
    """Write `path`, restoring the previous content if anything fails.

    An existing file is moved aside to a fresh `<name>.*.old` file in the
    same directory and handed to the body of the with statement. Anything
    at `path` that is not a regular file is left alone.

    """
    backup = None
    if os.path.lexists(path):
        if not path.is_file():
            raise PreconditionError.from_context(
                "Not a regular file: {}".format(path),
                "Refusing to replace it.",
            )
        fd, name = tempfile.mkstemp(
            dir=str(path.parent), prefix=path.name + ".", suffix=".old"
        )
        os.close(fd)
        backup = pathlib.Path(name)
        os.replace(str(path), str(backup))
    try:
        yield backup
    except BaseException:
        if path.exists():
            path.unlink()
        if backup is not None:
            os.replace(str(backup), str(path))
        raise
    if backup is not None:
        backup.unlink()


class Sops(object):
    """Runs the sops binary for one secret."""

    def __init__(
        self,
        secret,
        binary: str = "sops",
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.secret = secret
        self.binary = binary
        self.environ = dict(os.environ if environ is None else environ)

    @property
    def type_args(self) -> List[str]:
        sops_type = self.secret.format.sops_type
        return ["--input-type", sops_type, "--output-type", sops_type]

    @contextlib.contextmanager
    def config_file(self):
        with tempfile.NamedTemporaryFile(
            prefix="sops-", suffix=".yaml", mode="w", encoding="utf-8"
        ) as f:
            f.write(sops_config(self.secret))
            f.flush()
            yield f.name

    def _env(self, key: Optional[KeyAcquisition]):
        if key is None:
            return {
                k: v for k, v in self.environ.items() if k not in GLOBAL_VARIABLES
            }
        return key.apply(self.environ)

    def run(self, args, key=None, stdout=subprocess.PIPE) -> bytes:
        args = [self.binary] + list(args)
        output.annotate("Running `{}`".format(" ".join(args)), debug=True)
        try:
            p = subprocess.run(
                args,
                stdout=stdout,
                stderr=subprocess.PIPE,
                env=self._env(key),
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise SopsCallError.from_context(
                e.cmd, e.returncode, e.stderr
            ) from e
        except OSError as e:
            raise SopsNotFound.from_context(self.binary) from e
        return p.stdout

    def encrypt(self, input_path, output_path=None) -> Optional[bytes]:
        """Encrypt `input_path`.

        The ciphertext is written to `output_path` or returned if no path
        is given.

        """
        with self.config_file() as config:
            args = ["--config", config] + self.type_args
            args += ["-e", str(input_path)]
            if output_path is None:
                return self.run(args)
            with open(output_path, "wb") as f:
                self.run(args, stdout=f)
        return None

    def decrypt(self, input_path, key: KeyAcquisition) -> bytes:
        with self.config_file() as config:
            args = ["--config", config] + self.type_args
            args += ["-d", str(input_path)]
            return self.run(args, key=key)

    def rotate(self, path, key: KeyAcquisition):
        """Replace the data key of the file at `path` in place."""
        with self.config_file() as config:
            args = ["--config", config] + self.type_args
            args += ["rotate", "-i", str(path)]
            self.run(args, key=key)

    def updatekeys(self, path, key: KeyAcquisition):
        """Make the recipients of the file at `path` match the config."""
        with self.config_file() as config:
            args = ["--config", config] + self.type_args
            args += ["updatekeys", "-y", str(path)]
            self.run(args, key=key)

    def filestatus(self, path) -> bool:
        """Tell whether the file at `path` is encrypted by sops."""
        try:
            result = self.run(["filestatus", str(path)])
        except SopsCallError:
            return False
        try:
            return bool(json.loads(result.decode("utf-8")).get("encrypted"))
        except ValueError:
            return False
