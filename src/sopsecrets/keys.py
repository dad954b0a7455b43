"""Resolve the age key used to decrypt a secret.

Resolution order (first match wins):

1. ``--sopsAgeKey`` (direct key value)
2. ``--sopsAgeKeyFile`` (path to key file)
3. ``--sopsAgeKeyCmd`` (command that prints the key)
4. ``<SECRET>__<RECIPIENT>__AGE_KEY[_FILE|_CMD]`` (secret-specific)
5. ``<RECIPIENT>__AGE_KEY[_FILE|_CMD]`` (recipient-level)
6. ``SOPS_AGE_KEY[_FILE|_CMD]`` (global)
7. The key command configured for the operation, if any

If more than one recipient has a key configured on level 4 or 5 we refuse
to guess and raise ``ConflictingRecipientKeys``.

"""

import os
import shlex
from typing import Callable, List, Mapping, Optional, Union

from sopsecrets import (
    ConfigurationError,
    ConflictingRecipientKeys,
    NoKeySourceConfigured,
)
from sopsecrets._output import output

SOPS_AGE_KEY = "SOPS_AGE_KEY"
SOPS_AGE_KEY_FILE = "SOPS_AGE_KEY_FILE"
SOPS_AGE_KEY_CMD = "SOPS_AGE_KEY_CMD"

# (suffix of the env var, sops variable it feeds), in precedence order.
KEY_FORMS = [
    ("AGE_KEY", SOPS_AGE_KEY),
    ("AGE_KEY_FILE", SOPS_AGE_KEY_FILE),
    ("AGE_KEY_CMD", SOPS_AGE_KEY_CMD),
]

GLOBAL_VARIABLES = [SOPS_AGE_KEY, SOPS_AGE_KEY_FILE, SOPS_AGE_KEY_CMD]


def to_env_var(name: str) -> str:
    """Normalize a secret or recipient name: api-key -> API_KEY"""
    return name.upper().replace("-", "_")


def secret_specific_prefix(secret_name: str, recipient_name: str) -> str:
    return "{}__{}__".format(to_env_var(secret_name), to_env_var(recipient_name))


def recipient_prefix(recipient_name: str) -> str:
    return "{}__".format(to_env_var(recipient_name))


class KeySource(object):
    """A key command configured when the operation is set up.

    This is one of:

    - ``none``: nothing configured
    - ``literal``: shell command text
    - ``program``: path to an executable that prints the key
    - ``build``: a callable that is given the loaded configuration and
      returns the command or the path of such an executable

    Instances are immutable, the ``with_*`` methods return new ones.

    """

    NONE = "none"
    LITERAL = "literal"
    PROGRAM = "program"
    BUILD = "build"

    def __init__(self, kind: str = NONE, value=None):
        if kind not in (self.NONE, self.LITERAL, self.PROGRAM, self.BUILD):
            raise ValueError("Unknown key source kind `{}`".format(kind))
        self._kind = kind
        self._value = value

    @property
    def kind(self):
        return self._kind

    @property
    def value(self):
        return self._value

    @classmethod
    def literal(cls, command: str) -> "KeySource":
        return cls(cls.LITERAL, command)

    @classmethod
    def program(cls, path: Union[str, "os.PathLike"]) -> "KeySource":
        return cls(cls.PROGRAM, path)

    @classmethod
    def build(cls, fn: Callable) -> "KeySource":
        return cls(cls.BUILD, fn)

    def with_key_cmd(self, command: str) -> "KeySource":
        return self.literal(command)

    def with_key_program(self, path) -> "KeySource":
        return self.program(path)

    def build_key_program(self, fn: Callable) -> "KeySource":
        return self.build(fn)

    def __bool__(self):
        return self._kind != self.NONE

    def __eq__(self, other):
        if not isinstance(other, KeySource):
            return NotImplemented
        return (self._kind, self._value) == (other._kind, other._value)

    def __hash__(self):
        return hash((self._kind, self._value))

    def __repr__(self):
        return "<KeySource {} {!r}>".format(self._kind, self._value)

    def command(self, context=None) -> Optional[str]:
        """Return the shell command text for this key source."""
        if self._kind == self.NONE:
            return None
        if self._kind == self.LITERAL:
            return self._value
        if self._kind == self.PROGRAM:
            return _program_command(self._value)
        result = self._value(context)
        if isinstance(result, KeySource):
            return result.command(context)
        return _program_command(result)


NO_KEY_SOURCE = KeySource()


def _program_command(path) -> str:
    path = os.fspath(path)
    if not os.path.isfile(path) or not os.access(path, os.X_OK):
        raise ConfigurationError.from_context(
            "Key program is not an executable file: {}".format(path)
        )
    return shlex.quote(path)


class KeyFlags(object):
    """Key options given on the command line."""

    def __init__(
        self,
        key: Optional[str] = None,
        key_file: Optional[str] = None,
        key_cmd: Optional[str] = None,
    ):
        self.key = key
        self.key_file = key_file
        self.key_cmd = key_cmd


class KeyAcquisition(object):
    """The single sops variable that provides the key to the subprocess."""

    def __init__(self, variable: str, value: str, origin: str):
        self.variable = variable
        self.value = value
        self.origin = origin

    def __repr__(self):
        # The value may be a private key, never show it.
        return "<KeyAcquisition {} from {}>".format(self.variable, self.origin)

    def apply(self, environ: Mapping[str, str]) -> dict:
        """Return a copy of `environ` with exactly this key exported."""
        env = {k: v for k, v in environ.items() if k not in GLOBAL_VARIABLES}
        env[self.variable] = self.value
        return env


def _scan_recipients(environ, recipient_names, prefix_for, level, hint=""):
    """Find the recipient that has a key configured in `environ`.

    Each recipient is checked for key, file and command in that order and
    counts only once.

    """
    found = []
    for recipient in sorted(recipient_names):
        prefix = prefix_for(recipient)
        for suffix, variable in KEY_FORMS:
            name = prefix + suffix
            if environ.get(name):
                found.append((recipient, variable, environ[name], name))
                break
    if len(found) > 1:
        raise ConflictingRecipientKeys.from_context(
            level, [f[0] for f in found], hint
        )
    if found:
        recipient, variable, value, name = found[0]
        return KeyAcquisition(variable, value, name)
    return None


def expected_variables(secret) -> List[str]:
    """All the places the resolver looks at for `secret`, in order."""
    result = ["--sopsAgeKey", "--sopsAgeKeyFile", "--sopsAgeKeyCmd"]
    names = sorted(secret.recipients)
    for recipient in names:
        prefix = secret_specific_prefix(secret.name, recipient)
        result.extend(prefix + suffix for suffix, _ in KEY_FORMS)
    for recipient in names:
        prefix = recipient_prefix(recipient)
        result.extend(prefix + suffix for suffix, _ in KEY_FORMS)
    result.extend(GLOBAL_VARIABLES)
    return result


def resolve_key(
    flags: KeyFlags,
    environ: Mapping[str, str],
    secret,
    builtin: KeySource = NO_KEY_SOURCE,
    context=None,
) -> KeyAcquisition:
    """Determine how sops gets the key to decrypt `secret`.

    This is a pure function of its arguments: `environ` is a snapshot of the
    process environment.

    """
    if flags.key:
        result = KeyAcquisition(SOPS_AGE_KEY, flags.key, "--sopsAgeKey")
    elif flags.key_file:
        result = KeyAcquisition(
            SOPS_AGE_KEY_FILE, flags.key_file, "--sopsAgeKeyFile"
        )
    elif flags.key_cmd:
        result = KeyAcquisition(
            SOPS_AGE_KEY_CMD, flags.key_cmd, "--sopsAgeKeyCmd"
        )
    else:
        result = _resolve_from_environment(environ, secret)
        if result is None:
            command = builtin.command(context)
            if command:
                result = KeyAcquisition(
                    SOPS_AGE_KEY_CMD,
                    command,
                    "configured key command ({})".format(builtin.kind),
                )
    if result is None:
        raise NoKeySourceConfigured.from_context(
            secret.name, expected_variables(secret)
        )
    output.annotate(
        "Using {} from {} for secret '{}'.".format(
            result.variable, result.origin, secret.name
        ),
        debug=True,
    )
    return result


def _resolve_from_environment(environ, secret):
    names = list(secret.recipients)
    result = _scan_recipients(
        environ,
        names,
        lambda r: secret_specific_prefix(secret.name, r),
        "secret-specific",
    )
    if result is not None:
        return result
    result = _scan_recipients(
        environ,
        names,
        recipient_prefix,
        "recipient-level",
        hint="Use secret-specific env vars to disambiguate: "
        "{}__<RECIPIENT>__AGE_KEY_CMD".format(to_env_var(secret.name)),
    )
    if result is not None:
        return result
    for variable in GLOBAL_VARIABLES:
        if environ.get(variable):
            return KeyAcquisition(variable, environ[variable], variable)
    return None
