"""Load and validate the secrets configuration.

The configuration is an INI-style file, usually called ``secrets.cfg``::

    [settings]
    sops = sops
    allow_overwrite = false

    [recipient:alice]
    key = age1...
    decrypt_command = pass show age/alice

    [secret:api-key]
    dir = secrets
    format = json
    recipients = alice, bob

Directories and programs are relative to the directory containing the
configuration file.

"""

import configparser
import pathlib
from typing import Dict, List, Optional

from configupdater import ConfigUpdater

from sopsecrets import ConfigurationError, UnknownSecret
from sopsecrets._output import output
from sopsecrets.keys import NO_KEY_SOURCE, KeySource
from sopsecrets.secret import Recipient, Secret

CONFIG_FILE_NAME = "secrets.cfg"

SETTINGS_OPTIONS = ["sops", "allow_overwrite"]
RECIPIENT_OPTIONS = ["key", "type", "decrypt_command", "decrypt_program"]
SECRET_OPTIONS = ["dir", "format", "recipients", "allow_overwrite"]

TRUE_VALUES = ["1", "yes", "true", "on"]
FALSE_VALUES = ["0", "no", "false", "off"]


def as_list(value: str) -> List[str]:
    if "," in value:
        result = [x.strip() for x in value.split(",")]
    else:
        result = [x.strip() for x in value.split("\n")]
    return [x for x in result if x]


def as_bool(value: str, where: str) -> bool:
    if value.strip().lower() in TRUE_VALUES:
        return True
    if value.strip().lower() in FALSE_VALUES:
        return False
    raise ConfigurationError.from_context(
        "Invalid boolean `{}` for {}".format(value, where)
    )


def find_config(start=None) -> pathlib.Path:
    """Find the configuration file in `start` or any of its parents."""
    start = pathlib.Path(start or pathlib.Path.cwd()).absolute()
    ancestors = []
    for directory in [start] + list(start.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
        ancestors.append(str(directory))
    raise ConfigurationError.from_context(
        "Unable to locate {} in any of: {}".format(
            CONFIG_FILE_NAME, ", ".join(ancestors)
        )
    )


class SecretsConfig(object):
    """All secrets and recipients of a project."""

    sops_binary = "sops"

    def __init__(
        self,
        root,
        secrets: Optional[Dict[str, Secret]] = None,
        recipients: Optional[Dict[str, Recipient]] = None,
        sops_binary: Optional[str] = None,
        path=None,
        updater: Optional[ConfigUpdater] = None,
    ):
        self.root = pathlib.Path(root)
        self.secrets = dict(secrets or {})
        self.recipients = dict(recipients or {})
        if sops_binary:
            self.sops_binary = sops_binary
        self.path = pathlib.Path(path) if path else None
        self.updater = updater

    def __iter__(self):
        return iter(sorted(self.secrets))

    def __contains__(self, name):
        return name in self.secrets

    def __getitem__(self, name) -> Secret:
        try:
            return self.secrets[name]
        except KeyError:
            raise UnknownSecret.from_context(name, sorted(self.secrets))

    def all_recipient_names(self) -> List[str]:
        names = set()
        for secret in self.secrets.values():
            names.update(secret.recipients)
        return sorted(names)

    @classmethod
    def load(cls, path) -> "SecretsConfig":
        path = pathlib.Path(path).absolute()
        if not path.is_file():
            raise ConfigurationError.from_context(
                "Configuration file does not exist", path
            )
        output.annotate("Loading secrets from {}.".format(path), debug=True)
        updater = ConfigUpdater()
        try:
            updater.read(str(path))
        except configparser.Error as e:
            raise ConfigurationError.from_context(
                "Could not parse configuration: {}".format(e), path
            ) from e
        try:
            return cls._from_updater(updater, path)
        except ConfigurationError as e:
            e.path = str(path)
            raise

    @classmethod
    def _from_updater(cls, updater, path):
        root = path.parent
        settings = {}
        recipient_sections = {}
        secret_sections = {}
        for section_name in updater.sections():
            options = {
                option: (updater[section_name][option].value or "")
                for option in updater[section_name]
            }
            kind, _, name = section_name.partition(":")
            if section_name == "settings":
                cls._check_options(section_name, options, SETTINGS_OPTIONS)
                settings = options
            elif kind == "recipient" and name:
                cls._check_options(section_name, options, RECIPIENT_OPTIONS)
                recipient_sections[name] = options
            elif kind == "secret" and name:
                cls._check_options(section_name, options, SECRET_OPTIONS)
                secret_sections[name] = options
            else:
                raise ConfigurationError.from_context(
                    "Unknown section [{}]".format(section_name)
                )

        allow_overwrite = as_bool(
            settings.get("allow_overwrite", "false"), "[settings] allow_overwrite"
        )

        recipients = {}
        for name, options in recipient_sections.items():
            recipients[name] = cls._recipient(name, options, root)

        secrets = {}
        for name, options in secret_sections.items():
            if "dir" not in options:
                raise ConfigurationError.from_context(
                    "Secret `{}` has no `dir`".format(name)
                )
            secret_recipients = {}
            for recipient in as_list(options.get("recipients", "")):
                if recipient not in recipients:
                    raise ConfigurationError.from_context(
                        "Secret `{}` refers to unknown recipient `{}`".format(
                            name, recipient
                        )
                    )
                secret_recipients[recipient] = recipients[recipient]
            secrets[name] = Secret(
                name,
                options["dir"].strip(),
                secret_recipients,
                format=options.get("format", "bin").strip(),
                root=root,
                allow_overwrite=as_bool(
                    options["allow_overwrite"],
                    "[secret:{}] allow_overwrite".format(name),
                )
                if "allow_overwrite" in options
                else allow_overwrite,
            )

        return cls(
            root,
            secrets,
            recipients,
            sops_binary=settings.get("sops", "").strip() or None,
            path=path,
            updater=updater,
        )

    @staticmethod
    def _check_options(section_name, options, known):
        unknown = sorted(set(options) - set(known))
        if unknown:
            raise ConfigurationError.from_context(
                "Unknown option(s) in [{}]: {}".format(
                    section_name, ", ".join(unknown)
                )
            )

    @staticmethod
    def _recipient(name, options, root):
        if "key" not in options:
            raise ConfigurationError.from_context(
                "Recipient `{}` has no `key`".format(name)
            )
        command = options.get("decrypt_command", "").strip()
        program = options.get("decrypt_program", "").strip()
        if command and program:
            raise ConfigurationError.from_context(
                "Recipient `{}` may only set one of decrypt_command and "
                "decrypt_program".format(name)
            )
        if command:
            decrypt_program = KeySource.literal(command)
        elif program:
            decrypt_program = KeySource.program(root / program)
        else:
            decrypt_program = NO_KEY_SOURCE
        return Recipient(
            name,
            options["key"],
            key_type=options.get("type", "age").strip(),
            decrypt_program=decrypt_program,
        )
