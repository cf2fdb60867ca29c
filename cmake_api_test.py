import json
import os
import sys
import tempfile
import unittest

from cmake_api import CMakeApi, run_cmake_configure
from cmake_reply import CLIENT_NAME, parse_reply_file
from command_formatter import CompileCommandOptions
from errors import (AlreadyLoaded, BuildRootNotFound, CMakeNotFound, MissingResponse, NoSupportedCompiler, NotLoaded,
                    RegenerationError, ReplyParseError, UnsupportedVersion)
from toolchains import ToolchainSource

CL_PATH = 'C:/Program Files (x86)/Microsoft Visual Studio/2019/Enterprise/VC/Tools/MSVC/14.29.30133/bin/HostX64/x64/cl.exe'
SOURCE_ROOT = 'C:/proj'


def _write_json(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f)


def _target(name, sources, compile_groups):
    return {
        'name': name,
        'type': 'EXECUTABLE',
        'sources': [{'path': source} for source in sources],
        'compileGroups': compile_groups,
    }


def _compile_group(language, source_indexes, fragments=(), includes=(), defines=()):
    return {
        'language': language,
        'compileCommandFragments': [{'fragment': fragment} for fragment in fragments],
        'includes': [{'path': include} for include in includes],
        'defines': [{'define': define} for define in defines],
        'sourceIndexes': list(source_indexes),
    }


class FakeCMake:
    """Stands in for re-running CMake configuration: answers our query.json with reply files, like CMake would."""

    def __init__(self, reply_dir, cmake_info, cache, targets, toolchains=None, write_responses=True):
        self.reply_dir = reply_dir
        self.cmake_info = cmake_info
        self.cache = cache
        self.targets = targets
        self.toolchains = toolchains
        self.write_responses = write_responses
        self.calls = []
        self.requested_kinds = None

    def _write_reply(self, json_file, data):
        _write_json(os.path.join(self.reply_dir, json_file), data)

    def __call__(self, cmake_path, build_root):
        self.calls.append((cmake_path, build_root))
        query_file = os.path.join(build_root, '.cmake', 'api', 'v1', 'query', CLIENT_NAME, 'query.json')
        with open(query_file) as f:
            self.requested_kinds = [request['kind'] for request in json.load(f)['requests']]

        responses = []
        if self.write_responses:
            self._write_reply('cache-v2-1.json', {'kind': 'cache', 'entries': [
                {'name': name, 'value': value, 'type': 'FILEPATH', 'properties': []} for name, value in self.cache.items()]})
            responses.append({'kind': 'cache', 'version': {'major': 2, 'minor': 0}, 'jsonFile': 'cache-v2-1.json'})

            configuration_targets = []
            for i, target in enumerate(self.targets):
                json_file = f'target-{target["name"]}-Debug-{i}.json'
                self._write_reply(json_file, target)
                configuration_targets.append({'name': target['name'], 'jsonFile': json_file})
            self._write_reply('codemodel-v2-1.json', {
                'kind': 'codemodel',
                'paths': {'source': SOURCE_ROOT, 'build': build_root},
                'configurations': [{'name': 'Debug', 'targets': configuration_targets}],
            })
            responses.append({'kind': 'codemodel', 'version': {'major': 2, 'minor': 2}, 'jsonFile': 'codemodel-v2-1.json'})

            if 'toolchains' in self.requested_kinds:
                if self.toolchains is None:  # Like CMake < 3.20
                    responses.append({'error': "unknown request kind 'toolchains'"})
                else:
                    self._write_reply('toolchains-v1-1.json', {'kind': 'toolchains', 'toolchains': self.toolchains})
                    responses.append({'kind': 'toolchains', 'version': {'major': 1, 'minor': 0}, 'jsonFile': 'toolchains-v1-1.json'})

        self._write_reply('index-2021-02-01T00-00-00-0000.json', {
            'cmake': self.cmake_info,
            'objects': [],
            'reply': {CLIENT_NAME: {'query.json': {'responses': responses}}},
        })


class CMakeApiTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.build_root = os.path.join(self.tmp.name, 'build')
        self.reply_dir = os.path.join(self.build_root, '.cmake', 'api', 'v1', 'reply')
        self.cmake_path = os.path.join(self.tmp.name, 'cmake.exe')
        with open(self.cmake_path, 'w') as f:
            f.write('')

    def configure(self, cmake_version='3.22.1', cmake_path=None, **fake_cmake_args):
        """Lay out a build directory as CMake configuration leaves it, and return the FakeCMake that will regenerate it."""
        cmake_info = {'version': {'string': cmake_version}, 'paths': {'cmake': cmake_path or self.cmake_path}}
        _write_json(os.path.join(self.reply_dir, 'index-2021-01-01T00-00-00-0000.json'),
                    {'cmake': cmake_info, 'objects': [], 'reply': {}})
        fake_cmake_args.setdefault('cache', {'CMAKE_CXX_COMPILER': CL_PATH})
        fake_cmake_args.setdefault('targets', [])
        return FakeCMake(self.reply_dir, cmake_info, **fake_cmake_args)


class TestLoadApi(CMakeApiTestCase):
    def test_end_to_end(self):
        fake_cmake = self.configure(targets=[
            _target('app', ['src/main.cpp'], [_compile_group('CXX', [0], fragments=['/W4'], includes=['C:/proj/inc'], defines=['DEBUG'])]),
        ])
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)

        self.assertTrue(api.loaded)
        self.assertEqual(fake_cmake.calls, [(self.cmake_path, self.build_root)])
        self.assertEqual(fake_cmake.requested_kinds, ['cache', 'codemodel'])
        self.assertEqual(api.source_root, SOURCE_ROOT)
        self.assertEqual(api.toolchains.source, ToolchainSource.CACHE)

        commands = list(api.compile_commands_iterator())
        self.assertEqual(len(commands), 1)
        self.assertEqual(commands[0].arguments, '/W4"/IC:/proj/inc""/DDEBUG"')
        self.assertEqual(commands[0].source, os.path.join(SOURCE_ROOT, 'src/main.cpp'))
        self.assertEqual(commands[0].compiler, api.toolchains.cxx)
        self.assertEqual(commands[0].compiler.version, '14.29.30133')

    def test_toolchains_reply(self):
        fake_cmake = self.configure(cmake_version='3.20.1', cache={}, toolchains=[
            {'language': 'C', 'compiler': {'id': 'MSVC', 'version': '19.29.30133.0', 'path': CL_PATH,
                                           'implicit': {'includeDirectories': ['C:/sdk/include']}}},
        ])
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)

        self.assertEqual(fake_cmake.requested_kinds, ['cache', 'codemodel', 'toolchains'])
        self.assertEqual(api.toolchains.source, ToolchainSource.TOOLCHAINS_REPLY)
        self.assertEqual(api.toolchains.c.includes, ('C:/sdk/include',))
        self.assertIsNone(api.toolchains.cxx)

    def test_toolchains_request_unanswered_falls_back_to_cache(self):
        fake_cmake = self.configure(cmake_version='3.19.2', cache={'CMAKE_C_COMPILER': CL_PATH})
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)

        self.assertIn('toolchains', fake_cmake.requested_kinds)
        self.assertEqual(api.toolchains.source, ToolchainSource.CACHE)
        self.assertEqual(api.toolchains.c.path, CL_PATH)

    def test_missing_api_dir(self):
        os.makedirs(self.build_root)
        api = CMakeApi(regenerate=self.fail)
        with self.assertRaisesRegex(BuildRootNotFound, '.cmake/api/v1'):
            api.load_api(self.build_root)
        self.assertFalse(api.loaded)
        with self.assertRaises(NotLoaded):
            api.compile_commands_iterator()

    def test_missing_build_root(self):
        with self.assertRaises(BuildRootNotFound):
            CMakeApi(regenerate=self.fail).load_api(os.path.join(self.tmp.name, 'nope'))
        with self.assertRaises(BuildRootNotFound):
            CMakeApi(regenerate=self.fail).load_api('')

    def test_unsupported_version(self):
        fake_cmake = self.configure(cmake_version='3.13.6')
        api = CMakeApi(regenerate=fake_cmake)
        with self.assertRaisesRegex(UnsupportedVersion, '3.13.6'):
            api.load_api(self.build_root)
        self.assertEqual(fake_cmake.calls, [])

    def test_cmake_missing(self):
        fake_cmake = self.configure(cmake_path=os.path.join(self.tmp.name, 'gone', 'cmake.exe'))
        with self.assertRaises(CMakeNotFound):
            CMakeApi(regenerate=fake_cmake).load_api(self.build_root)

    def test_missing_responses(self):
        fake_cmake = self.configure(write_responses=False)
        api = CMakeApi(regenerate=fake_cmake)
        with self.assertRaises(MissingResponse):
            api.load_api(self.build_root)
        self.assertFalse(api.loaded)

    def test_no_msvc_leaves_nothing_loaded(self):
        fake_cmake = self.configure(cache={'CMAKE_C_COMPILER': '/usr/bin/gcc', 'CMAKE_CXX_COMPILER': '/usr/bin/g++'})
        api = CMakeApi(regenerate=fake_cmake)
        with self.assertRaises(NoSupportedCompiler):
            api.load_api(self.build_root)
        self.assertFalse(api.loaded)
        self.assertEqual(api.cache, {})
        self.assertEqual(api.targets, ())

    def test_load_twice(self):
        api = CMakeApi(regenerate=self.configure())
        api.load_api(self.build_root)
        with self.assertRaises(AlreadyLoaded):
            api.load_api(self.build_root)


class TestCompileCommandsIterator(CMakeApiTestCase):
    def test_not_loaded(self):
        with self.assertRaises(NotLoaded):
            CMakeApi().compile_commands_iterator()

    def test_order_and_skipped_languages(self):
        fake_cmake = self.configure(targets=[
            _target('lib', ['lib/a.c', 'lib/b.cpp', 'lib/c.cpp', 'lib/res.rc'], [
                _compile_group('C', [0], defines=['C_ONLY']),  # No MSVC C compiler configured.
                _compile_group('CXX', [2, 1], fragments=['/EHsc']),
                _compile_group('RC', [3]),
            ]),
            _target('app', ['app/main.cpp'], [_compile_group('CXX', [0], includes=['C:/proj/lib'])]),
        ])
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)

        commands = [(command.source, command.arguments) for command in api.compile_commands_iterator()]
        self.assertEqual(commands, [
            (os.path.join(SOURCE_ROOT, 'lib/c.cpp'), '/EHsc'),
            (os.path.join(SOURCE_ROOT, 'lib/b.cpp'), '/EHsc'),
            (os.path.join(SOURCE_ROOT, 'app/main.cpp'), '"/IC:/proj/lib"'),
        ])

    def test_external_includes_option(self):
        fake_cmake = self.configure(targets=[_target('app', ['main.cpp'], [_compile_group('CXX', [0], includes=['C:/deps'])])])
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)

        command, = api.compile_commands_iterator(CompileCommandOptions(use_external_includes=True))
        self.assertEqual(command.arguments, '"/external:IC:/deps"')
        self.assertEqual(command.argument_list, ('"/external:IC:/deps"',))

    def test_targets_are_read_lazily(self):
        reads = []

        def read_reply(path):
            reads.append(os.path.basename(path))
            return parse_reply_file(path)

        fake_cmake = self.configure(targets=[
            _target('one', ['one.cpp'], [_compile_group('CXX', [0])]),
            _target('two', ['two.cpp'], [_compile_group('CXX', [0])]),
        ])
        api = CMakeApi(read_reply=read_reply, regenerate=fake_cmake)
        api.load_api(self.build_root)
        self.assertFalse(any(read.startswith('target-') for read in reads))

        commands = api.compile_commands_iterator()
        next(commands)
        self.assertEqual([read for read in reads if read.startswith('target-')], ['target-one-Debug-0.json'])
        next(commands)
        with self.assertRaises(StopIteration):
            next(commands)
        # Exhausted for good.
        self.assertEqual(list(commands), [])

    def test_source_index_out_of_range(self):
        fake_cmake = self.configure(targets=[_target('app', ['main.cpp'], [_compile_group('CXX', [1])])])
        api = CMakeApi(regenerate=fake_cmake)
        api.load_api(self.build_root)
        with self.assertRaises(ReplyParseError):
            list(api.compile_commands_iterator())


class TestRunCMakeConfigure(unittest.TestCase):
    def test_missing_executable(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(RegenerationError):
                run_cmake_configure(os.path.join(tmp, 'no-cmake'), tmp)

    def test_failing_executable(self):
        with tempfile.TemporaryDirectory() as tmp:
            # Python, handed a directory without __main__.py, exits non-zero just like a failing CMake.
            with self.assertRaisesRegex(RegenerationError, 'exit code'):
                run_cmake_configure(sys.executable, tmp)


if __name__ == '__main__':
    unittest.main()
