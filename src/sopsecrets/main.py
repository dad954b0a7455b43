import argparse
import sys
import textwrap
from typing import Optional

import importlib_resources

import sopsecrets
import sopsecrets.manage
import sopsecrets.operations
from sopsecrets._output import TerminalBackend, output
from sopsecrets.config import SecretsConfig, find_config


class ArgumentParser(argparse.ArgumentParser):
    """Exit with status 1 on usage errors like on any other failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, "{}: error: {}\n".format(self.prog, message))


def add_output_argument(p, help):
    p.add_argument("--output", metavar="PATH", default=None, help=help)


def add_key_arguments(p):
    p.add_argument(
        "--sopsAgeKey",
        dest="key",
        metavar="KEY",
        default=None,
        help="Use this age secret key directly. "
        "WARNING: Visible in process list. Prefer --sopsAgeKeyCmd.",
    )
    p.add_argument(
        "--sopsAgeKeyFile",
        dest="key_file",
        metavar="PATH",
        default=None,
        help="Read age secret key from this file.",
    )
    p.add_argument(
        "--sopsAgeKeyCmd",
        dest="key_cmd",
        metavar="CMD",
        default=None,
        help="Run this command to get the age secret key.",
    )
    p.add_argument(
        "--recipient",
        metavar="NAME",
        default=None,
        help="Use the decrypt program configured for this recipient "
        "if no other key is given.",
    )


OUTPUT_PATH_HELP = (
    "Override output location. Either a directory (the expected file name "
    "is appended) or a full path with the secret's file name. "
    "Default: the secret's path."
)

KEY_RESOLUTION = """\
Key resolution order (first match wins):
  1. --sopsAgeKey, --sopsAgeKeyFile, --sopsAgeKeyCmd
  2. <SECRET>__<RECIPIENT>__AGE_KEY[_FILE|_CMD] (secret-specific)
  3. <RECIPIENT>__AGE_KEY[_FILE|_CMD] (recipient-level)
  4. SOPS_AGE_KEY[_FILE|_CMD] (global)
  5. Configured key command (--recipient)
"""


def main(args: Optional[list] = None) -> int:
    version = (
        importlib_resources.files("sopsecrets")
        .joinpath("version.txt")
        .read_text()
        .strip()
    )
    parser = ArgumentParser(
        description=(
            "sopsecrets v{}: manage sops encrypted secret files".format(version)
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.set_defaults(func=parser.print_usage)

    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug mode."
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Secrets configuration file. "
        "Default: secrets.cfg in the current directory or its parents.",
    )

    subparsers = parser.add_subparsers()
    operations = sopsecrets.operations

    # init
    p = subparsers.add_parser(
        "init",
        help="Create a new encrypted secret, from --input or in the editor.",
    )
    p.add_argument("secret", help="Name of the secret.")
    p.add_argument(
        "--input",
        metavar="PATH",
        default=None,
        help="Read plaintext from this file (or process substitution) "
        "instead of opening an editor.",
    )
    add_output_argument(p, OUTPUT_PATH_HELP)
    p.add_argument(
        "--editor",
        "-e",
        metavar="EDITOR",
        default=None,
        help="Invoke EDITOR to edit (default: $EDITOR or vi)",
    )
    p.set_defaults(func=operations.main, operation_name=operations.INIT)

    # encrypt
    p = subparsers.add_parser(
        "encrypt",
        help="Encrypt a file into a secret, overwriting it. "
        "Requires allow_overwrite for the secret.",
    )
    p.add_argument("secret", help="Name of the secret.")
    p.add_argument(
        "--input",
        metavar="PATH",
        required=True,
        help="Read plaintext from this file or process substitution.",
    )
    add_output_argument(
        p, OUTPUT_PATH_HELP + " Use /dev/stdout to print the ciphertext."
    )
    p.set_defaults(func=operations.main, operation_name=operations.ENCRYPT)

    # decrypt
    p = subparsers.add_parser(
        "decrypt",
        help="Decrypt a secret to stdout or a file.",
        description=KEY_RESOLUTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("secret", help="Name of the secret.")
    add_output_argument(p, "Write plaintext to file instead of stdout.")
    add_key_arguments(p)
    p.set_defaults(func=operations.main, operation_name=operations.DECRYPT)

    # edit
    p = subparsers.add_parser(
        "edit",
        help=textwrap.dedent(
            """
            Decrypts the secret, invokes the editor, and encrypts the
            result again."""
        ),
        description=KEY_RESOLUTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("secret", help="Name of the secret.")
    add_output_argument(p, OUTPUT_PATH_HELP)
    add_key_arguments(p)
    p.add_argument(
        "--editor",
        "-e",
        metavar="EDITOR",
        default=None,
        help="Invoke EDITOR to edit (default: $EDITOR or vi)",
    )
    p.set_defaults(func=operations.main, operation_name=operations.EDIT)

    # rotate
    p = subparsers.add_parser(
        "rotate",
        help="Re-encrypt a secret with a new data key, keeping its content.",
        description=KEY_RESOLUTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("secret", help="Name of the secret.")
    add_output_argument(p, OUTPUT_PATH_HELP)
    add_key_arguments(p)
    p.set_defaults(func=operations.main, operation_name=operations.ROTATE)

    # rekey
    p = subparsers.add_parser(
        "rekey",
        help="Re-encrypt a secret for the currently configured recipients.",
        description=KEY_RESOLUTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("secret", help="Name of the secret.")
    add_output_argument(p, OUTPUT_PATH_HELP)
    add_key_arguments(p)
    p.set_defaults(func=operations.main, operation_name=operations.REKEY)

    # env
    p = subparsers.add_parser(
        "env",
        help="Output a template of the environment variables used to "
        "find decryption keys.",
    )
    p.add_argument("secret", help="Name of the secret.")
    p.add_argument(
        "--recipient",
        metavar="NAME",
        default=None,
        help="Only output variables for this recipient.",
    )
    p.set_defaults(func=operations.main, operation_name=operations.ENV)

    # overview
    p = subparsers.add_parser(
        "summary", help="List all secrets and recipients."
    )
    p.set_defaults(func=sopsecrets.manage.summary)

    p = subparsers.add_parser(
        "show", help="Show format, location, recipients and operations."
    )
    p.add_argument("secret", help="Name of the secret.")
    p.set_defaults(func=sopsecrets.manage.show)

    p = subparsers.add_parser(
        "rule", help="Print the sops creation rule for a secret."
    )
    p.add_argument("secret", help="Name of the secret.")
    p.set_defaults(func=sopsecrets.manage.rule)

    p = subparsers.add_parser(
        "status", help="Check whether the secret file is encrypted."
    )
    p.add_argument("secret", help="Name of the secret.")
    p.set_defaults(func=sopsecrets.manage.status)

    # membership
    for name, func, help in [
        ("grant", sopsecrets.manage.grant, "Add a recipient to secrets."),
        ("revoke", sopsecrets.manage.revoke, "Remove a recipient from secrets."),
    ]:
        p = subparsers.add_parser(name, help=help)
        p.add_argument("recipient", help="Name of the recipient.")
        p.add_argument(
            "--secrets",
            default="",
            help="The secrets to update. Update all if not specified.",
        )
        p.set_defaults(func=func)

    args = parser.parse_args(args)

    # Consume global arguments
    output.enable_debug = args.debug

    # Pass over to function
    if args.func.__name__ == "print_usage":
        args.func()
        return 1

    output.backend = TerminalBackend()

    func_args = dict(args._get_kwargs())
    del func_args["func"]
    del func_args["debug"]
    del func_args["config"]
    try:
        config = SecretsConfig.load(args.config or find_config())
        return args.func(config, **func_args)
    except sopsecrets.ReportingException as e:
        if args.debug:
            output.error(str(e), exc_info=sys.exc_info())
        else:
            e.report()
        return 1
