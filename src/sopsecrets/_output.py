import sys
import traceback


class Output(object):
    """Manage the output of the various parts of sopsecrets to achieve
    consistency wrt to formatting and display.

    Everything written through here ends up on stderr: stdout is reserved
    for the payload of an operation so it can be piped.
    """

    enable_debug = False

    def __init__(self, backend):
        self.backend = backend

    def line(self, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        self.backend.line(message, **format)

    def annotate(self, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        self.line(message, **format)

    def tabular(self, key, value, separator=": ", debug=False, **kw):
        if debug and not self.enable_debug:
            return
        message = key.rjust(10) + separator + value
        self.annotate(message, **kw)

    def step(self, context, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        _format = {"bold": True}
        _format.update(format)
        self.line("{}: {}".format(context, message), **_format)

    def error(self, message, exc_info=None, debug=False):
        if debug and not self.enable_debug:
            return
        self.step("ERROR", message, red=True)
        if exc_info:
            if self.enable_debug:
                out = traceback.format_exception(*exc_info)
            else:
                etype, value, _ = exc_info
                out = traceback.format_exception_only(etype, value)
            out = "".join(out)
            out = "      " + out.replace("\n", "\n      ") + "\n"
            self.backend.write(out, red=True)


class TerminalBackend(object):
    def __init__(self, file=None):
        import py.io

        self._tw = py.io.TerminalWriter(file or sys.stderr)

    def line(self, message, **format):
        self._tw.line(message, **format)

    def write(self, content, **format):
        self._tw.write(content, **format)


class NullBackend(object):
    def line(self, message, **format):
        pass

    def write(self, content, **format):
        pass


output = Output(NullBackend())
