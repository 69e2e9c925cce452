# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
import textwrap

indent = lambda s: textwrap.fill(textwrap.dedent(s))


class FormulaBuildException(Exception):
    stage = None

    def error_msg(self):
        if self.stage:
            return f"{self.stage} stage failed: {self}"
        return str(self)


class RecipeError(FormulaBuildException):
    stage = "render"


class MissingDependency(FormulaBuildException):
    pass


class BuildLockError(FormulaBuildException):
    """Raised when we failed to acquire a lock."""


class FetchError(FormulaBuildException):
    stage = "fetch"

    def __init__(self, url, reason):
        self.url = url
        self.reason = reason
        super().__init__(f"Could not download {url}: {reason}")


class IntegrityError(FormulaBuildException):
    stage = "fetch"

    def __init__(self, url, expected, actual):
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"SHA256 mismatch for {url}: '{actual}' != '{expected}'\n"
            + indent(
                """\
                The downloaded file does not match the checksum declared in the
                recipe.  It was removed from the source cache.
            """
            )
        )


class UnpackError(FormulaBuildException):
    stage = "fetch"

    def __init__(self, path, reason):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not unpack {path}: {reason}")


class StageError(FormulaBuildException):
    stage = "stage resources"

    def __init__(self, resource, error):
        self.resource = resource
        self.error = error
        super().__init__(f"Staging resource {resource} failed:\n{error}")


class PatchError(FormulaBuildException):
    stage = "patch"

    def __init__(self, patch, diagnostic):
        self.patch = patch
        self.diagnostic = diagnostic
        super().__init__(f"Applying patch {patch} failed:\n{diagnostic}")


class BuildStepError(FormulaBuildException):
    stage = "build"

    def __init__(self, index, command, exit_code, output):
        self.index = index
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            "Build step {} failed with exit code {}\ncommand: {}\n{}".format(
                index, exit_code, " ".join(command), self.indented_output()
            )
        )

    def indented_output(self):
        indent = lambda s: s.replace("\n", "\n--> ")
        return f"Captured output:\n--> {indent(self.output.rstrip())}\n"


class RelocationError(FormulaBuildException):
    stage = "relocate"

    def __init__(self, path, reason=None):
        self.path = path
        self.msg = reason and f"Cannot relocate {path}: {reason}" or (
            f"Expected installed file {path} was not produced by the build, "
            "cannot relocate it"
        )
        super().__init__(self.msg)


class AcceptanceError(FormulaBuildException):
    stage = "test"

    def __init__(self, step, error):
        self.step = step
        self.error = error
        super().__init__(f"Acceptance test failed at step '{step}':\n{error}")


class AcceptanceTimeoutError(AcceptanceError):
    """The server never became ready; says nothing about its functionality."""

    def __init__(self, port, timeout):
        self.port = port
        self.timeout = timeout
        super().__init__(
            "ready", f"server did not accept connections on port {port} within {timeout}s"
        )
