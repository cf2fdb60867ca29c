"""Figuring out which MSVC compilers a project is configured with.

There are two sources for the same facts:
1. The toolchains reply (CMake >= 3.20), which states the compiler's path, version and implicit include directories directly.
2. The cache, where CMAKE_<LANG>_COMPILER gives the path, and the version and default includes have to be inferred from Visual Studio's directory layout.
We try them in that order and record which one worked.
"""

import dataclasses
import enum
import pathlib
import re
import typing  # MIN_PY=3.9: Switch e.g. typing.List[str] -> list[str]

from cmake_reply import ReplyContext
from errors import NoSupportedCompiler, ReplyParseError
from log import log_info


MSVC_COMPILER_ID = 'MSVC'
MSVC_EXECUTABLE_NAMES = ('cl.exe', 'cl')

# /external:I works without /experimental:external from Visual Studio 2019 16.10 on, i.e. cl.exe 19.29, toolset 14.29.
# See https://docs.microsoft.com/en-us/cpp/build/reference/external-external-headers-diagnostics
EXTERNAL_INCLUDES_MIN_COMPILER_VERSION = (19, 29)
EXTERNAL_INCLUDES_MIN_TOOLSET_VERSION = (14, 29)


@dataclasses.dataclass(frozen=True)
class CompilerInfo:
    path: str
    # Either cl.exe's own version (19.29.30133.0) when read from the toolchains reply, or the toolset directory's (14.29.30133) when inferred from the path.
    version: str
    includes: typing.Tuple[str, ...] = ()

    @property
    def supports_external_includes(self):
        """Whether this cl.exe accepts /external:I."""
        match = re.match(r'(\d+)\.(\d+)', self.version)
        if not match:
            return False
        major_minor = (int(match.group(1)), int(match.group(2)))
        if major_minor[0] == EXTERNAL_INCLUDES_MIN_TOOLSET_VERSION[0]:  # Toolset numbering
            return major_minor >= EXTERNAL_INCLUDES_MIN_TOOLSET_VERSION
        return major_minor >= EXTERNAL_INCLUDES_MIN_COMPILER_VERSION


@enum.unique
class ToolchainSource(enum.Enum):
    """Which of the two sources the compilers were resolved from."""
    TOOLCHAINS_REPLY = 'toolchains'
    CACHE = 'cache'


@dataclasses.dataclass(frozen=True)
class ToolchainResolution:
    source: ToolchainSource
    c: typing.Optional[CompilerInfo] = None
    cxx: typing.Optional[CompilerInfo] = None

    def compiler_for_language(self, language: str):
        """The compiler for a CMake language name, or None if it isn't one we analyze."""
        if language == 'C':
            return self.c
        if language == 'CXX':
            return self.cxx
        return None


def load_toolchains(context: ReplyContext, toolchains_json_file: str):
    """Read MSVC compilers out of the toolchains reply.

    Returns a ToolchainResolution, with c and cxx left None for languages not compiled with MSVC.
    """
    data = context.read_reply(toolchains_json_file)

    compilers = {}
    try:
        for toolchain in data['toolchains']:
            compiler = toolchain['compiler']
            if toolchain['language'] not in ('C', 'CXX') or compiler.get('id') != MSVC_COMPILER_ID:
                continue
            if not compiler.get('path'):  # Only present when CMake knows it.
                continue
            compilers[toolchain['language']] = CompilerInfo(
                path=compiler['path'],
                version=compiler.get('version', ''),
                includes=tuple(compiler.get('implicit', {}).get('includeDirectories', [])),
            )
    except (KeyError, TypeError) as e:
        raise ReplyParseError(f"Malformed CMake API toolchains reply: {toolchains_json_file} ({e!r})") from e

    return ToolchainResolution(ToolchainSource.TOOLCHAINS_REPLY, c=compilers.get('C'), cxx=compilers.get('CXX'))


def _is_msvc_path(compiler_path: str):
    return pathlib.PureWindowsPath(compiler_path).name.lower() in MSVC_EXECUTABLE_NAMES


def _get_toolset_dir(compiler_path: str):
    """Visual Studio lays compilers out as .../VC/Tools/MSVC/<toolset version>/bin/Host<arch>/<arch>/cl.exe"""
    return pathlib.PureWindowsPath(compiler_path).parents[3]


def extract_version_from_compiler_path(compiler_path: str):
    """Extract the MSVC toolset version, which is the name of the toolset directory."""
    return _get_toolset_dir(compiler_path).name


def extract_includes_from_compiler_path(compiler_path: str):
    """Extract the default include directories of an MSVC toolset."""
    # TODO: also add the Windows SDK includes paired with the toolset.
    return ((_get_toolset_dir(compiler_path) / 'include').as_posix(),)


def _compiler_from_cache_entry(cache: typing.Dict[str, str], variable: str):
    compiler_path = cache.get(variable)
    if not compiler_path or not _is_msvc_path(compiler_path):
        return None
    if len(pathlib.PureWindowsPath(compiler_path).parents) < 4:  # Not inside a Visual Studio toolset, so there's nothing to infer from.
        return None
    return CompilerInfo(
        path=compiler_path,
        version=extract_version_from_compiler_path(compiler_path),
        includes=extract_includes_from_compiler_path(compiler_path),
    )


def load_toolchains_from_cache(cache: typing.Dict[str, str]):
    """Infer MSVC compilers from CMAKE_C_COMPILER and CMAKE_CXX_COMPILER, for CMake versions without a toolchains reply."""
    return ToolchainResolution(
        ToolchainSource.CACHE,
        c=_compiler_from_cache_entry(cache, 'CMAKE_C_COMPILER'),
        cxx=_compiler_from_cache_entry(cache, 'CMAKE_CXX_COMPILER'),
    )


def resolve_toolchains(context: ReplyContext, cache: typing.Dict[str, str], toolchains_json_file: typing.Optional[str] = None):
    """Resolve the C and C++ compilers, from the toolchains reply if we have one, otherwise from the cache.

    Raises NoSupportedCompiler if neither language is compiled with MSVC.
    """
    if toolchains_json_file:
        resolution = load_toolchains(context, toolchains_json_file)
        if resolution.c or resolution.cxx:
            return resolution

    log_info(">>> Inferring compilers from the CMake cache.")
    resolution = load_toolchains_from_cache(cache)
    if resolution.c or resolution.cxx:
        return resolution

    raise NoSupportedCompiler("MSVC is required for either/both C or C++. "
                              f"Found C compiler: {cache.get('CMAKE_C_COMPILER')!r}, C++ compiler: {cache.get('CMAKE_CXX_COMPILER')!r}")
