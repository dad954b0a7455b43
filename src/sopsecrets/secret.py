import os
import pathlib
import re
from typing import Dict, Optional

import pyrage

from sopsecrets import ConfigurationError
from sopsecrets.formats import DEFAULT_FORMAT, FORMATS, Format
from sopsecrets.keys import NO_KEY_SOURCE, KeySource

AGE_KEY_PATTERN = re.compile(r"^age1[a-z0-9]{58}$")

KEY_TYPES = ["age"]

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

# Names that would shadow commands of the command line interface.
RESERVED_NAMES = ["summary"]


class PublicKey(str):
    """An age public key that passed validation."""


def parse_public_key(value: str, key_type: str = "age") -> PublicKey:
    if key_type not in KEY_TYPES:
        raise ConfigurationError.from_context(
            "Invalid key type `{}`, expected one of: {}".format(
                key_type, ", ".join(KEY_TYPES)
            )
        )
    value = (value or "").strip()
    if not AGE_KEY_PATTERN.match(value):
        raise ConfigurationError.from_context(
            "Invalid age public key `{}`".format(value)
        )
    try:
        pyrage.x25519.Recipient.from_str(value)
    except pyrage.RecipientError as e:
        raise ConfigurationError.from_context(
            "Invalid age public key `{}`: {}".format(value, e)
        ) from e
    return PublicKey(value)


class Recipient(object):
    """Somebody (or something) that is able to decrypt a secret."""

    def __init__(
        self,
        name: str,
        key: str,
        key_type: str = "age",
        decrypt_program: KeySource = NO_KEY_SOURCE,
    ):
        if not NAME_PATTERN.match(name or ""):
            raise ConfigurationError.from_context(
                "Invalid recipient name `{}`".format(name)
            )
        self.name = name
        self.key_type = key_type
        self.key = parse_public_key(key, key_type)
        self.decrypt_program = decrypt_program

    def __repr__(self):
        return "<Recipient {} {}>".format(self.name, self.key)


class Secret(object):
    """A named encrypted file with its recipients and format.

    The derived attributes are computed once on construction. In particular
    `exists` reflects the filesystem at that point in time.

    """

    def __init__(
        self,
        name: str,
        dir,
        recipients: Optional[Dict[str, Recipient]] = None,
        format: str = DEFAULT_FORMAT,
        root=None,
        allow_overwrite: bool = False,
    ):
        if not NAME_PATTERN.match(name or ""):
            raise ConfigurationError.from_context(
                "Invalid secret name `{}`".format(name)
            )
        if name in RESERVED_NAMES:
            raise ConfigurationError.from_context(
                "Invalid secret name `{}`. These names are reserved: {}".format(
                    name, ", ".join(RESERVED_NAMES)
                )
            )
        if format not in FORMATS:
            raise ConfigurationError.from_context(
                "Invalid format `{}` for secret `{}`, expected one of: {}".format(
                    format, name, ", ".join(FORMATS)
                )
            )
        self._name = name
        self._format = FORMATS[format]
        self._root = pathlib.Path(root or os.getcwd())
        self._dir = pathlib.Path(dir)
        self._recipients = dict(recipients or {})
        self._allow_overwrite = allow_overwrite
        self._file_name = self._name + self._format.extension
        self._path = self._root / self._dir / self._file_name
        self._exists = self._path.is_file()

    def __repr__(self):
        return "<Secret {} {}>".format(self._name, self.project_path)

    @property
    def name(self) -> str:
        return self._name

    @property
    def dir(self) -> pathlib.Path:
        return self._dir

    @property
    def format(self) -> Format:
        return self._format

    @property
    def recipients(self) -> Dict[str, Recipient]:
        return dict(self._recipients)

    @property
    def allow_overwrite(self) -> bool:
        return self._allow_overwrite

    @property
    def root(self) -> pathlib.Path:
        return self._root

    @property
    def file_name(self) -> str:
        return self._file_name

    @property
    def path(self) -> pathlib.Path:
        return self._path

    @property
    def project_path(self) -> str:
        """The path of the secret file relative to the project root."""
        try:
            relative = self._path.relative_to(self._root)
        except ValueError:
            return str(self._path)
        return "./" + relative.as_posix()

    @property
    def exists(self) -> bool:
        return self._exists

    @property
    def public_keys(self):
        return [self._recipients[r].key for r in sorted(self._recipients)]
