"""Operations on a single secret.

Which operations a secret offers depends on whether its file existed when
the configuration was loaded:

=============  ==========================================
file missing   init, env
file present   decrypt, edit, rotate, rekey, env
=============  ==========================================

Secrets with ``allow_overwrite`` additionally offer ``encrypt`` in both
states.

"""

import copy
import os
import pathlib
import shutil
import sys
import tempfile
from typing import FrozenSet, Optional

from sopsecrets import (
    FilenameMismatch,
    InputNotFound,
    OperationUnavailable,
    OutputDirectoryMissing,
    PreconditionError,
    SecretAlreadyExists,
    UnknownRecipient,
)
from sopsecrets._output import output
from sopsecrets.edit import Editor, default_editor
from sopsecrets.keys import (
    GLOBAL_VARIABLES,
    KEY_FORMS,
    NO_KEY_SOURCE,
    KeyFlags,
    KeySource,
    recipient_prefix,
    resolve_key,
    secret_specific_prefix,
    to_env_var,
)
from sopsecrets.sops import Sops, replacing
from sopsecrets.template import expand

INIT = "init"
ENCRYPT = "encrypt"
DECRYPT = "decrypt"
EDIT = "edit"
ROTATE = "rotate"
REKEY = "rekey"
ENV = "env"

OPERATION_NAMES = [INIT, ENCRYPT, DECRYPT, EDIT, ROTATE, REKEY, ENV]

STDOUT = "/dev/stdout"


def available_operations(secret) -> FrozenSet[str]:
    if secret.exists:
        operations = {DECRYPT, EDIT, ROTATE, REKEY, ENV}
    else:
        operations = {INIT, ENV}
    if secret.allow_overwrite:
        operations.add(ENCRYPT)
    return frozenset(operations)


def resolve_output_path(secret, output_arg=None, allow_stdout=False):
    """Determine where an operation writes the secret file.

    `output_arg` may be a directory (the expected file name is appended)
    or a full path whose file name has to match the secret's file name.

    """
    if not output_arg:
        return secret.path
    if allow_stdout and output_arg in (STDOUT, "-"):
        return STDOUT
    if os.path.isdir(output_arg) or output_arg.endswith("/"):
        return pathlib.Path(output_arg.rstrip("/") or "/") / secret.file_name
    given = os.path.basename(output_arg)
    if given != secret.file_name:
        raise FilenameMismatch.from_context(
            secret.file_name, given, os.path.dirname(output_arg) or "."
        )
    return pathlib.Path(output_arg)


def check_output_directory(path):
    directory = pathlib.Path(path).parent
    if not directory.is_dir():
        raise OutputDirectoryMissing.from_context(directory)


class Operation(object):
    """Base class for operations on a secret."""

    name: str = ""
    decrypts = False

    def __init__(self, config, secret, environ=None, sops=None, stdout=None):
        self.config = config
        self.secret = secret
        self.environ = dict(os.environ if environ is None else environ)
        self.sops = sops or Sops(secret, config.sops_binary, self.environ)
        self._stdout = stdout

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.secret.name)

    @property
    def stdout(self):
        if self._stdout is not None:
            return self._stdout
        return sys.stdout.buffer

    @property
    def available(self):
        return self.name in available_operations(self.secret)

    def check_available(self):
        if not self.available:
            raise OperationUnavailable.from_context(self.secret, self.name)

    def execute(self):
        raise NotImplementedError("execute() not implemented")

    def encrypt_text(self, cleartext: bytes, path):
        """Encrypt `cleartext` into the secret file at `path`."""
        with tempfile.NamedTemporaryFile(
            prefix="secret", suffix=self.secret.format.extension
        ) as clearfile:
            clearfile.write(cleartext)
            clearfile.flush()
            self.encrypt_file(clearfile.name, path)

    def encrypt_file(self, input_path, path):
        with replacing(pathlib.Path(path)):
            self.sops.encrypt(input_path, path)


class DecryptingOperation(Operation):
    """An operation that needs a private key.

    The key command configured here is only used if neither command line
    flags nor environment variables provide a key.

    """

    decrypts = True

    def __init__(
        self,
        config,
        secret,
        flags: Optional[KeyFlags] = None,
        key_source: KeySource = NO_KEY_SOURCE,
        **kw,
    ):
        super().__init__(config, secret, **kw)
        self.flags = flags or KeyFlags()
        self.key_source = key_source

    def _with_key_source(self, key_source):
        other = copy.copy(self)
        other.key_source = key_source
        return other

    def with_key_cmd(self, command: str):
        return self._with_key_source(self.key_source.with_key_cmd(command))

    def with_key_program(self, path):
        return self._with_key_source(self.key_source.with_key_program(path))

    def build_key_program(self, fn):
        return self._with_key_source(self.key_source.build_key_program(fn))

    def for_recipient(self, name: str):
        """Use the decrypt program configured for recipient `name`."""
        recipients = self.secret.recipients
        if name not in recipients:
            raise UnknownRecipient.from_context(name, sorted(recipients))
        program = recipients[name].decrypt_program
        if not program:
            raise PreconditionError.from_context(
                "Recipient '{}' has no decrypt program configured.".format(
                    name
                ),
                "Set decrypt_command or decrypt_program for [recipient:{}]".format(
                    name
                ),
            )
        return self._with_key_source(program)

    def recipient_operations(self):
        """Variants of this operation for all recipients that have a
        decrypt program."""
        return {
            name: self._with_key_source(recipient.decrypt_program)
            for name, recipient in self.secret.recipients.items()
            if recipient.decrypt_program
        }

    def resolve_key(self):
        return resolve_key(
            self.flags,
            self.environ,
            self.secret,
            self.key_source,
            self.config,
        )


class Init(Operation):
    """Create a new encrypted secret file."""

    name = INIT

    def __init__(self, config, secret, input=None, output=None, editor=None, **kw):
        super().__init__(config, secret, **kw)
        self.input = input
        self.output = output
        self.editor = editor

    def execute(self):
        self.check_available()
        path = resolve_output_path(self.secret, self.output)
        check_output_directory(path)
        if path.exists():
            raise SecretAlreadyExists.from_context(path)
        if self.input:
            if not os.path.exists(self.input):
                raise InputNotFound.from_context(self.input)
            self.encrypt_file(self.input, path)
        else:
            editor = Editor(
                self.editor or default_editor(),
                lambda cleartext: self.encrypt_text(cleartext, path),
                cleartext=self.secret.format.template.encode("utf-8"),
                suffix=self.secret.format.extension,
                is_new=True,
            )
            editor.main()
        output.annotate("Created: {}".format(path))


class Encrypt(Operation):
    """Encrypt a file into the secret, overwriting what is there."""

    name = ENCRYPT

    def __init__(self, config, secret, input=None, output=None, **kw):
        super().__init__(config, secret, **kw)
        self.input = input
        self.output = output

    def execute(self):
        self.check_available()
        if not self.input:
            raise PreconditionError.from_context(
                "--input is required",
                "Run with --help for usage information.",
            )
        path = resolve_output_path(self.secret, self.output, allow_stdout=True)
        if path != STDOUT:
            check_output_directory(path)
        if not os.path.exists(self.input):
            raise InputNotFound.from_context(self.input)
        if path == STDOUT:
            self.stdout.write(self.sops.encrypt(self.input))
            self.stdout.flush()
            return
        self.encrypt_file(self.input, path)
        output.annotate("Encrypted: {}".format(path))


class Decrypt(DecryptingOperation):
    """Print the cleartext of the secret or write it to a file."""

    name = DECRYPT

    def __init__(self, config, secret, output=None, **kw):
        super().__init__(config, secret, **kw)
        self.output = output

    def execute(self):
        self.check_available()
        key = self.resolve_key()
        to_stdout = self.output in (None, "", STDOUT, "-")
        if not to_stdout:
            path = pathlib.Path(self.output)
            if path.is_dir() or self.output.endswith("/"):
                path = path / self.secret.file_name
            check_output_directory(path)
        cleartext = self.sops.decrypt(self.secret.path, key)
        cleartext = self.secret.format.pretty(cleartext)
        if to_stdout:
            self.stdout.write(cleartext)
            self.stdout.flush()
            return
        with replacing(path):
            with open(path, "wb") as f:
                f.write(cleartext)
        output.annotate("Decrypted: {}".format(path))


class Edit(DecryptingOperation):
    """Decrypt the secret, edit it and encrypt it again."""

    name = EDIT

    def __init__(self, config, secret, output=None, editor=None, **kw):
        super().__init__(config, secret, **kw)
        self.output = output
        self.editor = editor

    def execute(self):
        self.check_available()
        key = self.resolve_key()
        path = resolve_output_path(self.secret, self.output)
        check_output_directory(path)
        cleartext = self.sops.decrypt(self.secret.path, key)
        editor = Editor(
            self.editor or default_editor(),
            lambda cleartext: self.encrypt_text(cleartext, path),
            cleartext=cleartext,
            suffix=self.secret.format.extension,
        )
        if path.absolute() != self.secret.path.absolute():
            # A copy at a new location is always written.
            editor.original_cleartext = None
        editor.main()
        output.annotate("Updated: {}".format(path))


class InPlaceOperation(DecryptingOperation):
    """Copy the secret file to the output path and let sops modify it."""

    done = ""

    def __init__(self, config, secret, output=None, **kw):
        super().__init__(config, secret, **kw)
        self.output = output

    def execute(self):
        self.check_available()
        key = self.resolve_key()
        path = resolve_output_path(self.secret, self.output)
        check_output_directory(path)
        same = path.absolute() == self.secret.path.absolute()
        with replacing(path) as backup:
            source = backup if same and backup is not None else self.secret.path
            shutil.copyfile(source, path)
            self.modify(path, key)
        output.annotate("{}: {}".format(self.done, path))

    def modify(self, path, key):
        raise NotImplementedError("modify() not implemented")


class Rotate(InPlaceOperation):
    """Re-encrypt the secret with a new data key, keeping the content."""

    name = ROTATE
    done = "Rotated"

    def modify(self, path, key):
        self.sops.rotate(path, key)


class Rekey(InPlaceOperation):
    """Re-encrypt the data key for the configured recipients."""

    name = REKEY
    done = "Rekeyed"

    def modify(self, path, key):
        self.sops.updatekeys(path, key)


ENV_TEMPLATE = """\
{% if recipient %}
# Environment variables for decrypting '{{ name }}' as recipient '{{ recipient }}'
{% else %}
# Environment variables for decrypting '{{ name }}'
{% endif %}
#
# Resolution order (first match wins):
#   1. CLI flags (--sopsAgeKey, --sopsAgeKeyFile, --sopsAgeKeyCmd)
#   2. Secret-specific recipient vars ({{ secret_env }}__<RECIPIENT>__AGE_KEY*)
#   3. Recipient-level vars (<RECIPIENT>__AGE_KEY*)
#   4. Global SOPS vars (SOPS_AGE_KEY*)
#   5. Configured key command (if any)
#
{% if not recipient %}
# Recipients: {{ names|join(", ") }}
#
{% endif %}

{% for r in recipients %}
# --- Secret-specific ({{ name }} + {{ r.name }}) ---
{% for var in r.secret_vars %}
# {{ var }}=""
{% endfor %}

# --- Recipient-level ({{ r.name }}, all secrets) ---
{% for var in r.recipient_vars %}
# {{ var }}=""
{% endfor %}

{% endfor %}
# --- Global (any secret, any recipient) ---
{% for var in global_vars %}
# {{ var }}=""
{% endfor %}
"""


class Env(Operation):
    """Print a commented template of the key environment variables."""

    name = ENV

    def __init__(self, config, secret, recipient=None, **kw):
        super().__init__(config, secret, **kw)
        self.recipient = recipient

    def render(self) -> str:
        names = sorted(self.secret.recipients)
        if self.recipient:
            if self.recipient not in names:
                raise UnknownRecipient.from_context(self.recipient, names)
            selected = [self.recipient]
        else:
            selected = names
        recipients = []
        for r in selected:
            secret_prefix = secret_specific_prefix(self.secret.name, r)
            prefix = recipient_prefix(r)
            recipients.append(
                {
                    "name": r,
                    "secret_vars": [secret_prefix + s for s, _ in KEY_FORMS],
                    "recipient_vars": [prefix + s for s, _ in KEY_FORMS],
                }
            )
        return expand(
            ENV_TEMPLATE,
            name=self.secret.name,
            secret_env=to_env_var(self.secret.name),
            recipient=self.recipient,
            names=names,
            recipients=recipients,
            global_vars=GLOBAL_VARIABLES,
        )

    def execute(self):
        self.check_available()
        self.stdout.write(self.render().encode("utf-8"))
        self.stdout.flush()


OPERATIONS = {
    INIT: Init,
    ENCRYPT: Encrypt,
    DECRYPT: Decrypt,
    EDIT: Edit,
    ROTATE: Rotate,
    REKEY: Rekey,
    ENV: Env,
}


def operation(
    config,
    name,
    secret,
    recipient=None,
    key=None,
    key_file=None,
    key_cmd=None,
    **kw,
):
    """Set up operation `name` for `secret` from command line options."""
    cls = OPERATIONS[name]
    if not cls.decrypts:
        if name == ENV:
            kw["recipient"] = recipient
        return cls(config, secret, **kw)
    op = cls(config, secret, flags=KeyFlags(key, key_file, key_cmd), **kw)
    if recipient:
        op = op.for_recipient(recipient)
    return op


def main(config, operation_name, secret, **kw):
    operation(config, operation_name, config[secret], **kw).execute()
    return 0
