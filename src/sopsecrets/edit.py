"""Edit the cleartext of a secret in an external editor."""

import os
import subprocess
import sys
import tempfile
import traceback
from typing import Callable, Optional

from sopsecrets import EditAborted, EmptySecret
from sopsecrets._output import output


def default_editor():
    return os.environ.get("EDITOR") or "vi"


class Editor(object):
    """An editing session for one secret.

    `save` is called with the edited cleartext and is responsible for
    encrypting it. If that fails the user may edit again, retry saving or
    give up.

    """

    def __init__(
        self,
        editor_cmd: str,
        save: Callable[[bytes], None],
        cleartext: bytes = b"",
        suffix: str = "",
        is_new: bool = False,
    ):
        self.editor_cmd = editor_cmd
        self.save = save
        self.suffix = suffix
        self.is_new = is_new
        self.cleartext = cleartext
        self.original_cleartext: Optional[bytes] = None if is_new else cleartext
        self.saved = False

    def main(self):
        self.interact()
        if not self.saved:
            raise EditAborted.from_context()

    def _input(self):
        return input("> ").strip()

    def interact(self):
        cmd = "edit"
        while cmd != "quit":
            try:
                self.process_cmd(cmd)
            except (EditAborted, EmptySecret, KeyboardInterrupt):
                raise
            except Exception as e:
                print(file=sys.stderr)
                print(f"An error occurred: {e}", file=sys.stderr)
                if output.enable_debug:
                    print("Traceback:", file=sys.stderr)
                    print(traceback.format_exc(), file=sys.stderr)
                print(file=sys.stderr)
                print(
                    "Your changes are still available. You can try:",
                    file=sys.stderr,
                )
                print(
                    "\tedit       -- opens editor with current data again",
                    file=sys.stderr,
                )
                print(
                    "\tencrypt    -- tries to encrypt current data again",
                    file=sys.stderr,
                )
                print(
                    "\tquit       -- quits and loses your changes",
                    file=sys.stderr,
                )
                cmd = self._input()
            else:
                break

    def process_cmd(self, cmd):
        if cmd == "edit":
            self.edit()
            self.encrypt()
        elif cmd == "encrypt":
            self.encrypt()
        elif cmd == "":
            raise ValueError("empty command")
        else:
            raise ValueError("unknown command `{}`".format(cmd))

    def encrypt(self):
        if self.is_new and not self.cleartext:
            raise EmptySecret.from_context()
        if self.cleartext == self.original_cleartext:
            output.annotate("No changes from original cleartext. Not updating.")
            self.saved = True
            return
        self.save(self.cleartext)
        self.saved = True

    def edit(self):
        with tempfile.NamedTemporaryFile(
            prefix="edit", suffix=self.suffix
        ) as clearfile:
            clearfile.write(self.cleartext)
            clearfile.flush()

            args = [self.editor_cmd + " " + clearfile.name]
            output.annotate(
                "Running editor with command: {}".format(args), debug=True
            )
            subprocess.check_call(args, shell=True)

            with open(clearfile.name, "rb") as new_clearfile:
                self.cleartext = new_clearfile.read()
