"""Exceptions raised while reading the CMake File API and while driving code analysis.

Every failure here is fatal to a run. Nothing retries: each one means either a precondition the user has to fix (unconfigured build directory, old CMake) or CMake not producing the replies we asked for.
"""


class CMakeApiError(Exception):
    """Base class for failures reading or querying the CMake File API."""


class BuildRootNotFound(CMakeApiError):
    """The build directory, or its .cmake/api/v1 directory, doesn't exist."""


class ReplyNotFound(CMakeApiError):
    """A reply file referenced by CMake is missing."""


class ReplyParseError(CMakeApiError):
    """A reply file couldn't be read, isn't JSON, or lacks a field we depend on."""


class IndexNotFound(CMakeApiError):
    """No reply/index-*.json exists."""


class CodemodelParseError(CMakeApiError):
    """The codemodel reply lacks the configuration, targets or source path."""


class NoSupportedCompiler(CMakeApiError):
    """Neither the C nor the C++ compiler is MSVC."""


class UnsupportedVersion(CMakeApiError):
    """The CMake that configured the project is older than we support."""


class QueryWriteError(CMakeApiError):
    """Failed to write our query.json."""


class CMakeNotFound(CMakeApiError):
    """The CMake executable recorded in the index no longer exists."""


class RegenerationError(CMakeApiError):
    """Re-running CMake to produce our replies failed."""


class MissingResponse(CMakeApiError):
    """CMake didn't answer one of the requests we can't do without."""


class UnknownResponseKind(CMakeApiError):
    """CMake answered with a kind of reply we never requested."""


class NotLoaded(CMakeApiError):
    """The API was queried before load_api() succeeded."""


class AlreadyLoaded(CMakeApiError):
    """load_api() was called a second time on the same session."""


class AnalysisError(Exception):
    """Base class for failures setting up or running cl.exe /analyze."""


class InvalidInput(AnalysisError):
    """An action input is missing or has an unsupported value."""


class EspXEngineNotFound(AnalysisError):
    """The code analysis plugin couldn't be found next to cl.exe."""
