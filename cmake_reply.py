"""Reading (and requesting) the reply files of the CMake File API.

CMake's File API is a directory protocol: clients drop query files in <build>/.cmake/api/v1/query, CMake answers during configuration with JSON reply files in <build>/.cmake/api/v1/reply. See https://cmake.org/cmake/help/latest/manual/cmake-file-api.7.html for the format of every file read here.

This module handles the client-independent parts: finding and parsing replies, writing our query, and loading the cache and codemodel objects.
"""

import dataclasses
import json
import os
import re
import typing  # MIN_PY=3.9: Switch e.g. typing.List[str] -> list[str]

from errors import (CodemodelParseError, IndexNotFound, QueryWriteError, ReplyNotFound, ReplyParseError,
                    UnknownResponseKind)
from log import log_warning


# Name of our query subdirectory. CMake echoes it back as the key of our responses in the index.
CLIENT_NAME = 'client-msvc-ca-action'

INDEX_PREFIX = 'index-'

# Oldest CMake whose replies we know how to read.
MIN_CMAKE_VERSION = (3, 13, 7)
# We only ask for toolchains up to this version. Newer versions get by with cache + codemodel, falling back to the cache for compiler info if the toolchains reply is missing.
TOOLCHAINS_QUERY_MAX_VERSION = (3, 20, 5)

# Request kinds we know how to load, with the major version of the object we ask for.
CACHE_KIND = 'cache'
CODEMODEL_KIND = 'codemodel'
TOOLCHAINS_KIND = 'toolchains'
_KNOWN_KINDS = (CACHE_KIND, CODEMODEL_KIND, TOOLCHAINS_KIND)


def parse_reply_file(reply_file: str):
    """Read and parse a JSON reply file.

    reply_file should be absolute. Raises ReplyNotFound if it's empty or missing, ReplyParseError if it can't be read or isn't JSON.
    """
    if not reply_file:
        raise ReplyNotFound("Failed to find CMake API reply file.")

    if not os.path.isfile(reply_file):
        raise ReplyNotFound(f"Failed to find CMake API reply file: {reply_file}")

    try:
        with open(reply_file, encoding='utf-8') as f:
            return json.load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise ReplyParseError(f"Failed to read CMake API reply file: {reply_file} ({e})") from e
    except json.JSONDecodeError as e:
        raise ReplyParseError(f"CMake API reply file isn't valid JSON: {reply_file} ({e})") from e


@dataclasses.dataclass(frozen=True)
class ReplyContext:
    """Where the replies of one build directory live and how to read them.

    Passed to every loader instead of keeping any module-level state, so that one session owns everything it reads.
    read_reply can be swapped out, e.g. for in-memory fixtures in tests.
    """
    api_dir: str
    read_reply: typing.Callable[[str], typing.Any] = parse_reply_file

    @property
    def reply_dir(self):
        return os.path.join(self.api_dir, 'reply')

    @property
    def query_dir(self):
        return os.path.join(self.api_dir, 'query', CLIENT_NAME)

    def reply_path(self, json_file: str):
        """Resolve a jsonFile reference, which CMake always makes relative to the reply directory."""
        return os.path.join(self.reply_dir, json_file)


def parse_version(version: str):
    """Parse a CMake version string into a (major, minor, patch) tuple for comparison.

    Suffixes like -rc1 or a dev commit are ignored, so 3.20.0-rc1 compares as 3.20.0.
    If the version can't be parsed, returns (0, 0, 0), which every version check will reject.
    """
    match = re.search(r'^(\d+)\.(\d+)(?:\.(\d+))?', version or '')
    if not match:
        log_warning(f">>> Failed to parse CMake version: {version!r}")
        return (0, 0, 0)
    return tuple(int(match.group(i) or 0) for i in range(1, 4))


def find_reply_index(reply_dir: str):
    """Find the most recent index-*.json in the reply directory.

    CMake names index files with a timestamp, so the lexicographically greatest name is the newest; we don't trust directory listing order or mtimes.
    """
    try:
        filenames = os.listdir(reply_dir)
    except OSError as e:
        raise IndexNotFound(f"Failed to find CMake API index reply file: {reply_dir} can't be listed ({e})") from e

    index_filenames = [f for f in filenames if f.startswith(INDEX_PREFIX) and f.endswith('.json')]
    if not index_filenames:
        raise IndexNotFound(f"Failed to find CMake API index reply file in {reply_dir}")

    return os.path.join(reply_dir, max(index_filenames))


@dataclasses.dataclass(frozen=True)
class ApiIndex:
    """What we need from reply/index-*.json."""
    cmake_path: str
    cmake_version: str
    # Absolute path of the reply file answering each kind we requested. Empty before CMake has seen our query.
    responses: typing.Dict[str, str]
    # Messages of requests CMake couldn't answer, e.g. toolchains on CMake < 3.20.
    errors: typing.Tuple[str, ...] = ()


def load_index(context: ReplyContext):
    """Load the newest index reply and pull out CMake's location/version and the responses to our query."""
    index_file = find_reply_index(context.reply_dir)
    data = context.read_reply(index_file)

    try:
        cmake_path = data['cmake']['paths']['cmake']
        cmake_version = data['cmake']['version']['string']
    except (KeyError, TypeError) as e:
        raise ReplyParseError(f"CMake API index {index_file} is missing the CMake path or version ({e!r})") from e

    client_reply = data.get('reply', {}).get(CLIENT_NAME, {})
    query_reply = client_reply.get('query.json', {})
    if 'error' in query_reply:  # CMake failed to read our query file at all.
        log_warning(f">>> CMake couldn't read our query: {query_reply['error']}")
        return ApiIndex(cmake_path, cmake_version, {}, (query_reply['error'],))

    responses = {}
    errors = []
    for response in query_reply.get('responses', []):
        if 'error' in response:  # A request CMake doesn't understand, answered in place.
            log_warning(f">>> CMake couldn't answer a request: {response['error']}")
            errors.append(response['error'])
            continue
        kind = response.get('kind')
        if kind not in _KNOWN_KINDS:
            raise UnknownResponseKind(f"Unknown CMake API reply response kind received: {kind}")
        responses[kind] = context.reply_path(response['jsonFile'])

    return ApiIndex(cmake_path, cmake_version, responses, tuple(errors))


def create_api_query(api_dir: str, cmake_version: str):
    """Write our query.json, asking for exactly the objects this version of CMake should be asked for.

    Returns the path of the query file.
    """
    requests = [
        {'kind': CACHE_KIND, 'version': 2},
        {'kind': CODEMODEL_KIND, 'version': 2},
    ]
    if parse_version(cmake_version) <= TOOLCHAINS_QUERY_MAX_VERSION:
        requests.append({'kind': TOOLCHAINS_KIND, 'version': 1})

    query_dir = ReplyContext(api_dir).query_dir
    query_file = os.path.join(query_dir, 'query.json')
    try:
        os.makedirs(query_dir, exist_ok=True)
        with open(query_file, 'w', encoding='utf-8') as f:
            json.dump({'requests': requests}, f, indent=2)
    except OSError as e:
        raise QueryWriteError(f"Failed to write query.json file for CMake API: {query_file} ({e})") from e

    return query_file


def load_cache(context: ReplyContext, cache_json_file: str):
    """Load the cache reply as a flat name -> value mapping.

    Entry types (BOOL, PATH, STRING...) are dropped; everything we look up is compared as a string.
    """
    data = context.read_reply(cache_json_file)
    try:
        return {entry['name']: str(entry['value']) for entry in data['entries']}
    except (KeyError, TypeError) as e:
        raise ReplyParseError(f"Malformed CMake API cache reply: {cache_json_file} ({e!r})") from e


@dataclasses.dataclass(frozen=True)
class TargetReference:
    """Handle to a per-target reply, read lazily when commands are generated."""
    json_file: str


@dataclasses.dataclass(frozen=True)
class Codemodel:
    source_root: str
    targets: typing.Tuple[TargetReference, ...]


def load_codemodel(context: ReplyContext, codemodel_json_file: str):
    """Load the codemodel reply: the project's source root and a reference to every target of the first configuration.

    Multi-config generators (Visual Studio, Ninja Multi-Config) list one configuration per build type; we always take the first one.
    """
    data = context.read_reply(codemodel_json_file)

    configurations = data.get('configurations')
    if not configurations:
        raise CodemodelParseError(f"CMake API codemodel reply has no configurations: {codemodel_json_file}")
    # TODO: let the user pick the configuration for multi-config generators.
    configuration = configurations[0]
    if len(configurations) > 1:
        log_warning(f">>> Multiple build configurations found. Only analyzing the first one: {configuration.get('name')}")

    try:
        targets = tuple(TargetReference(context.reply_path(target['jsonFile'])) for target in configuration['targets'])
    except (KeyError, TypeError) as e:
        raise CodemodelParseError(f"Malformed target list in CMake API codemodel reply: {codemodel_json_file} ({e!r})") from e

    source_root = data.get('paths', {}).get('source')
    if not source_root:
        raise CodemodelParseError(f"CMake API codemodel reply has no source path: {codemodel_json_file}")

    return Codemodel(source_root, targets)
