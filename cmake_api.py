"""Compile commands for every source of an already-configured CMake project, via the CMake File API.

Usage:
    api = CMakeApi()
    api.load_api(build_root)
    for compile_command in api.compile_commands_iterator():
        ...

load_api() re-runs CMake's configure step once, so that CMake answers our query; it never builds anything.
"""

import dataclasses
import locale
import os
import subprocess
import typing  # MIN_PY=3.9: Switch e.g. typing.List[str] -> list[str]

from cmake_reply import (CACHE_KIND, CODEMODEL_KIND, MIN_CMAKE_VERSION, TOOLCHAINS_KIND, ReplyContext,
                         create_api_query, load_cache, load_codemodel, load_index, parse_reply_file,
                         parse_version)
from command_formatter import CommandFormatter, CompileCommandOptions, CompileGroup
from errors import (AlreadyLoaded, BuildRootNotFound, CMakeNotFound, MissingResponse, NotLoaded, RegenerationError,
                    ReplyParseError, UnsupportedVersion)
from log import log_info
from toolchains import CompilerInfo, resolve_toolchains


@dataclasses.dataclass(frozen=True)
class CompileCommand:
    source: str
    # Every argument, concatenated, as handed to cl.exe.
    arguments: str
    compiler: CompilerInfo
    # The same arguments before joining, for callers that need to add their own separators.
    argument_list: typing.Tuple[str, ...] = ()


def run_cmake_configure(cmake_path: str, build_root: str):
    """Re-run CMake's configure step on an existing build directory, so it writes replies for our query.

    Blocks until CMake exits; replies are only complete once it has.
    """
    try:
        cmake_process = subprocess.run(
            [cmake_path, build_root],
            # MIN_PY=3.7: Replace PIPEs with capture_output.
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding=locale.getpreferredencoding(),
            check=False,
        )
    except OSError as e:
        raise RegenerationError(f"Unable to run the CMake used previously to configure the project: {cmake_path} ({e})") from e

    if cmake_process.returncode:
        raise RegenerationError(f"CMake failed to regenerate {build_root} (exit code {cmake_process.returncode}). Output:\n{cmake_process.stdout}")


class CMakeApi:
    """Interacts with the CMake File API of one build directory.

    load_api() must succeed, exactly once, before compile commands can be requested.
    """

    def __init__(self, read_reply=parse_reply_file, regenerate=run_cmake_configure):
        # Injection points: read_reply(path) -> parsed JSON and regenerate(cmake_path, build_root).
        self._read_reply = read_reply
        self._regenerate = regenerate

        self.loaded = False
        self.cmake_version = None
        self.cache = {}
        self.source_root = None
        self.targets = ()
        self.toolchains = None

    def load_api(self, build_root: str):
        """Query the CMake File API of an existing, already configured CMake project. This will:
            - Read the existing reply index to find CMake and its version
            - Write a query file for all data needed
            - Re-run CMake configuration to generate replies to our query
            - Read the replies and collect everything that isn't per-target

        On failure, raises a CMakeApiError and the session stays unloaded.
        """
        if self.loaded:
            raise AlreadyLoaded("CMakeApi: load_api can only be called once.")

        if not build_root:
            raise BuildRootNotFound("CMakeApi: 'build_root' can not be empty.")

        if not os.path.isdir(build_root):
            raise BuildRootNotFound(f"Generated build root for CMake not found at: {build_root}")

        api_dir = os.path.join(build_root, '.cmake', 'api', 'v1')
        if not os.path.isdir(api_dir):
            raise BuildRootNotFound(f".cmake/api/v1 missing from {build_root}, run CMake configuration first.")
        context = ReplyContext(api_dir, self._read_reply)

        # Read the existing reply index to get the CMake executable and version.
        existing_index = load_index(context)
        cmake_version = existing_index.cmake_version
        if parse_version(cmake_version) < MIN_CMAKE_VERSION:
            raise UnsupportedVersion(f"CMake version >= {'.'.join(map(str, MIN_CMAKE_VERSION))} is required. Found: {cmake_version}")

        cmake_path = existing_index.cmake_path
        if not os.path.isfile(cmake_path):
            raise CMakeNotFound(f"Unable to find CMake used to build project at: {cmake_path}")
        log_info(f">>> Using CMake {cmake_version} at {cmake_path}")

        create_api_query(api_dir, cmake_version)
        self._regenerate(cmake_path, build_root)

        # CMake has now written a fresher index including our responses.
        index = load_index(context)
        for required_kind in (CACHE_KIND, CODEMODEL_KIND):
            if required_kind not in index.responses:
                raise MissingResponse(f"Failed to load {required_kind} response from CMake API in {context.reply_dir}")

        cache = load_cache(context, index.responses[CACHE_KIND])
        codemodel = load_codemodel(context, index.responses[CODEMODEL_KIND])
        toolchains = resolve_toolchains(context, cache, index.responses.get(TOOLCHAINS_KIND))

        # Only commit once everything has loaded, so a failure never leaves a partial model behind.
        self.cmake_version = cmake_version
        self.cache = cache
        self.source_root = codemodel.source_root
        self.targets = codemodel.targets
        self.toolchains = toolchains
        self.loaded = True

    def _load_target(self, target):
        """Resolve a TargetReference to its parsed reply."""
        return self._read_reply(target.json_file)

    def compile_commands_iterator(self, options: typing.Optional[CompileCommandOptions] = None):
        """Lazily yield a CompileCommand per source file of every target, in the order CMake lists them.

        Compile groups in languages without an MSVC compiler are skipped.
        The returned iterator is single-use: once exhausted, call again for a fresh one.
        """
        if not self.loaded:
            raise NotLoaded("CMakeApi: compile_commands_iterator called before the API is loaded.")

        return self._generate_compile_commands(CommandFormatter(options or CompileCommandOptions()))

    def _generate_compile_commands(self, formatter: CommandFormatter):
        for target in self.targets:
            target_data = self._load_target(target)
            sources = target_data.get('sources', [])
            for group_data in target_data.get('compileGroups', []):
                group = CompileGroup.from_reply(group_data)
                compiler = self.toolchains.compiler_for_language(group.language)
                if not compiler:
                    continue

                argument_list = tuple(formatter.get_arguments(group, compiler))
                arguments = ''.join(argument_list)
                for source_index in group.source_indexes:
                    if not 0 <= source_index < len(sources):
                        raise ReplyParseError(f"Source index {source_index} out of range in target reply: {target.json_file}")
                    yield CompileCommand(
                        source=os.path.join(self.source_root, sources[source_index]['path']),
                        arguments=arguments,
                        compiler=compiler,
                        argument_list=argument_list,
                    )
