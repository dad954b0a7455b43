import yaml

from sopsecrets import ConfigurationError, UnknownRecipient, UnknownSecret
from sopsecrets._output import output
from sopsecrets.config import as_list
from sopsecrets.operations import OPERATION_NAMES, available_operations
from sopsecrets.sops import Sops, creation_rules
from sopsecrets.template import expand

SUMMARY_TEMPLATE = """\
Secrets:
{% for secret in secrets %}
  - {{ secret.name }} ({{ "exists" if secret.exists else "not created" }})
{% else %}
  (none)
{% endfor %}

Recipients:
{% for name in recipients %}
  - {{ name }}
{% else %}
  (none)
{% endfor %}

Usage:
  sopsecrets show <secret>           Show secret info
  sopsecrets init <secret>           Create new secret
  sopsecrets decrypt <secret>        Decrypt to stdout
  sopsecrets edit <secret>           Edit secret
  sopsecrets rotate <secret>         Rotate the data key
  sopsecrets rekey <secret>          Re-encrypt with current recipients
  sopsecrets env <secret>            Output env var template
"""

SHOW_TEMPLATE = """\
Secret: {{ secret.name }}

Format: {{ secret.format.name }}
File: {{ secret.file_name }}
Dir: {{ secret.dir }}
Path: {{ secret.project_path }}
Status: {{ "exists" if secret.exists else "not created" }}

Recipients: {{ recipients|join(", ") if recipients else "(none)" }}

Available operations:
{% for op in operations %}
  sopsecrets {{ op }} {{ secret.name }}
{% endfor %}
"""


def summary(config):
    """List all secrets and all recipients."""
    print(
        expand(
            SUMMARY_TEMPLATE,
            secrets=[config[name] for name in config],
            recipients=config.all_recipient_names(),
        ),
        end="",
    )
    return 0


def show(config, secret):
    secret = config[secret]
    available = available_operations(secret)
    print(
        expand(
            SHOW_TEMPLATE,
            secret=secret,
            recipients=sorted(secret.recipients),
            operations=[op for op in OPERATION_NAMES if op in available],
        ),
        end="",
    )
    return 0


def rule(config, secret):
    """Print the sops creation rule for a secret."""
    secret = config[secret]
    path = secret.project_path
    if path.startswith("./"):
        path = path[2:]
    print(
        yaml.safe_dump(
            creation_rules(
                secret.public_keys,
                path_regex=path.replace(".", r"\.") + "$",
            ),
            default_flow_style=False,
            sort_keys=False,
        ),
        end="",
    )
    return 0


def status(config, secret):
    """Tell whether the secret file is properly encrypted."""
    secret = config[secret]
    if not secret.exists:
        print("not created")
        return 1
    if Sops(secret, config.sops_binary).filestatus(secret.path):
        print("encrypted")
        return 0
    print("not encrypted")
    return 1


def _select_secrets(config, secrets):
    if not secrets:
        return list(config)
    names = as_list(secrets)
    unknown = [name for name in names if name not in config]
    if unknown:
        raise UnknownSecret.from_context(", ".join(unknown), list(config))
    return names


def _update_recipients(config, recipient, secrets, update):
    if config.updater is None:
        raise ConfigurationError.from_context(
            "Configuration was not loaded from a file, cannot update it."
        )
    if recipient not in config.recipients:
        raise UnknownRecipient.from_context(recipient, sorted(config.recipients))
    changed = []
    for name in _select_secrets(config, secrets):
        section = "secret:{}".format(name)
        option = config.updater[section].get("recipients")
        members = as_list(option.value or "") if option is not None else []
        new_members = update(list(members))
        if new_members == members:
            continue
        config.updater.set(section, "recipients", ", ".join(new_members))
        changed.append(name)
    if changed:
        config.updater.update_file()
    for name in changed:
        output.annotate("Updated recipients of {}.".format(name))
        if config[name].exists:
            output.annotate(
                "Run `sopsecrets rekey {}` to re-encrypt it.".format(name)
            )
    return changed


def grant(config, recipient, secrets="", **kw):
    """Add a recipient to given secrets.

    If secrets is not given, the recipient is added to all secrets.

    """

    def add(members):
        if recipient not in members:
            members.append(recipient)
        return members

    _update_recipients(config, recipient, secrets, add)
    return 0


def revoke(config, recipient, secrets="", **kw):
    """Remove a recipient from given secrets.

    If secrets is not given, the recipient is removed from all secrets.

    """

    def remove(members):
        return [m for m in members if m != recipient]

    _update_recipients(config, recipient, secrets, remove)
    return 0
