import os.path
from typing import List

from ._output import output

with open(os.path.dirname(__file__) + "/version.txt") as f:
    __version__ = f.read().strip()


class ReportingException(Exception):
    """Exceptions that support user-readable reporting."""

    def __str__(self):
        raise NotImplementedError()

    def report(self):
        raise NotImplementedError()


class ConfigurationError(ReportingException):
    """The secrets configuration could not be loaded successfully."""

    message: str
    path: str

    @classmethod
    def from_context(cls, message, path=None):
        self = cls()
        self.message = message
        self.path = str(path) if path else ""
        return self

    def __str__(self):
        return str(self.message)

    def report(self):
        output.error(self.message)
        if self.path:
            output.tabular("config", self.path)


class KeyResolutionError(ReportingException):
    """No usable decryption key could be determined."""


class NoKeySourceConfigured(KeyResolutionError):

    secret: str
    expected: List[str]

    @classmethod
    def from_context(cls, secret, expected):
        self = cls()
        self.secret = secret
        self.expected = list(expected)
        return self

    def __str__(self):
        return "No decryption key configured for secret '{}'. Set one of: {}".format(
            self.secret, ", ".join(self.expected)
        )

    def report(self):
        output.error(
            "No decryption key configured for secret '{}'".format(self.secret)
        )
        output.annotate("Provide a key with one of:")
        for name in self.expected:
            output.annotate("  " + name)


class ConflictingRecipientKeys(KeyResolutionError):

    level: str
    recipients: List[str]
    hint: str

    @classmethod
    def from_context(cls, level, recipients, hint=""):
        self = cls()
        self.level = level
        self.recipients = list(recipients)
        self.hint = hint
        return self

    def __str__(self):
        return "Multiple {} key env vars set for recipients: {}".format(
            self.level, ", ".join(self.recipients)
        )

    def report(self):
        output.error(str(self))
        output.annotate(
            "Only one recipient's key may be configured at the {} level.".format(
                self.level
            )
        )
        if self.hint:
            output.annotate(self.hint)


class PreconditionError(ReportingException):
    """An operation cannot run in the current state of the filesystem."""

    message: str
    hint: str

    @classmethod
    def from_context(cls, message, hint=""):
        self = cls()
        self.message = message
        self.hint = hint
        return self

    def __str__(self):
        if self.hint:
            return "{}\n{}".format(self.message, self.hint)
        return self.message

    def report(self):
        output.error(self.message)
        if self.hint:
            output.annotate(self.hint)


class OperationUnavailable(PreconditionError):
    """The operation is not exposed for the secret in its current state."""

    secret: str
    operation: str
    available: List[str]

    @classmethod
    def from_context(cls, secret, operation):
        if secret.exists:
            message = "Secret '{}' already exists at {}".format(
                secret.name, secret.project_path
            )
            hint = "Use edit to change it."
        else:
            message = "Secret '{}' does not exist at {}".format(
                secret.name, secret.project_path
            )
            hint = "Use init to create a new secret."
        if operation == "encrypt":
            message = "Overwriting secret '{}' is not allowed".format(
                secret.name
            )
            hint = "Set `allow_overwrite = true` for the secret to enable encrypt."
        self = super().from_context(message, hint)
        self.secret = secret.name
        self.operation = operation
        return self


class UnknownSecret(PreconditionError):
    @classmethod
    def from_context(cls, name, known):
        return super().from_context(
            "Unknown secret: {}".format(name),
            "Known secrets: {}".format(", ".join(known) or "(none)"),
        )


class UnknownRecipient(PreconditionError):
    @classmethod
    def from_context(cls, name, known):
        return super().from_context(
            "Unknown recipient: {}".format(name),
            "Valid recipients: {}".format(", ".join(known) or "(none)"),
        )


class FilenameMismatch(PreconditionError):

    expected: str
    given: str

    @classmethod
    def from_context(cls, expected, given, directory):
        self = super().from_context(
            "Filename mismatch.",
            "Hint: Use a directory path instead: --output {}/".format(
                directory
            ),
        )
        self.expected = expected
        self.given = given
        return self

    def __str__(self):
        return "Filename mismatch: expected {}, given {}".format(
            self.expected, self.given
        )

    def report(self):
        output.error(self.message)
        output.tabular("Expected", self.expected)
        output.tabular("Given", self.given)
        output.annotate(self.hint)


class OutputDirectoryMissing(PreconditionError):
    @classmethod
    def from_context(cls, directory):
        return super().from_context(
            "Directory does not exist: {}".format(directory)
        )


class SecretAlreadyExists(PreconditionError):
    @classmethod
    def from_context(cls, path):
        return super().from_context(
            "Secret already exists at {}".format(path),
            "Use edit to change it or choose a different --output.",
        )


class InputNotFound(PreconditionError):
    @classmethod
    def from_context(cls, path):
        return super().from_context("Input file not found: {}".format(path))


class EmptySecret(PreconditionError):
    @classmethod
    def from_context(cls):
        return super().from_context("Aborted: No content saved")


class EditAborted(PreconditionError):
    @classmethod
    def from_context(cls):
        return super().from_context("Aborted: Your changes were not saved")


class SopsCallError(ReportingException):
    """There was an error calling sops."""

    command: str
    exitcode: str
    output: str

    @classmethod
    def from_context(cls, command, exitcode, output):
        self = cls()
        self.command = " ".join(command)
        self.exitcode = str(exitcode)
        self.output = (output or b"").decode("utf-8", errors="replace")
        return self

    def __str__(self):
        return (
            f"Exitcode {self.exitcode} while calling: "
            f"{self.command}\n{self.output}"
        )

    def report(self):
        output.error("Error while calling sops")
        output.tabular("command", self.command, red=True)
        output.tabular("exit code", self.exitcode)
        output.tabular("message", self.output, separator=":\n")


class SopsNotFound(ReportingException):
    """The sops binary could not be executed."""

    binary: str

    @classmethod
    def from_context(cls, binary):
        self = cls()
        self.binary = binary
        return self

    def __str__(self):
        return (
            "Could not find sops binary. Is sops installed? "
            "I tried looking for: `{}`".format(self.binary)
        )

    def report(self):
        output.error(str(self))
