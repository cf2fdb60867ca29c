"""Run MSVC Code Analysis (cl.exe /analyze) over every C and C++ source of a CMake project, writing one SARIF log per source.

Interface:
- Meant to be run as a GitHub Action step after CMake configuration. Inputs come from INPUT_* environment variables:
    - cmakeBuildDir (required): the configured CMake build directory.
    - results (required): directory for the SARIF logs. Created if missing.
    - ruleset: a .ruleset file, either a path (relative paths are relative to the repository root) or the name of one shipped with Visual Studio.
    - cleanSarif: 'true' to delete stale .sarif files from results first. Defaults to 'true'.
    - useExternalIncludes: 'true' to pass includes with /external:I, hiding warnings from headers outside the project. Defaults to 'false'.
- Exits non-zero, with an explanation, if anything prevents analysis.
"""

import glob
import locale
import os
import subprocess
import sys
import tempfile
import typing  # MIN_PY=3.9: Switch e.g. typing.List[str] -> list[str]

from cmake_api import CMakeApi
from command_formatter import CompileCommandOptions, escape_argument
from errors import AnalysisError, CMakeApiError, EspXEngineNotFound, InvalidInput
from log import log_error, log_info, log_success, log_warning


# Where Visual Studio keeps its official rulesets, relative to the directory containing cl.exe (.../VC/Tools/MSVC/<version>/bin/Host<arch>/<arch>).
RULESET_DIRECTORY_FROM_COMPILER_DIR = (os.pardir,) * 7 + ('Team Tools', 'Static Analysis Tools', 'Rule Sets')

ESPXENGINE_DLL = 'EspXEngine.dll'
_HOST_TO_TARGET_DIR = {
    'HostX86': 'x86',
    'HostX64': 'x64',
}


def get_input(name: str):
    """Get the value of an action input. GitHub passes them as INPUT_<NAME> environment variables."""
    return os.environ.get('INPUT_' + name.replace(' ', '_').upper(), '').strip()


def get_bool_input(name: str, default: bool):
    value = get_input(name)
    if not value:
        return default
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    raise InvalidInput(f"Unsupported value for '{name}': {value!r}. Must be either 'true' or 'false'.")


def resolve_input_path(name: str, required: bool = False):
    """Resolve a path input, making relative paths relative to the repository root.

    Returns None if the input is empty and not required.
    """
    input_path = get_input(name)
    if not input_path:
        if required:
            raise InvalidInput(f"'{name}' input path can not be empty.")
        return None

    if not os.path.isabs(input_path):
        # GITHUB_WORKSPACE is the repository root in Actions. Outside of Actions, fall back to the working directory.
        input_path = os.path.join(os.environ.get('GITHUB_WORKSPACE', os.getcwd()), input_path)

    return input_path


def prepare_results_dir(results_dir: str, clean_sarif: bool):
    """Create the results directory if needed and delete stale SARIF logs from previous runs if asked to."""
    os.makedirs(results_dir, exist_ok=True)

    if clean_sarif:
        for sarif_file in glob.glob(os.path.join(results_dir, '*.sarif')):
            if os.path.isfile(sarif_file):
                os.remove(sarif_file)

    return results_dir


def find_espxengine(cl_path: str):
    """Find EspXEngine.dll, the analysis plugin, which only ships in the host-native bin directory of a toolset."""
    cl_dir = os.path.dirname(cl_path)

    # Check if we already have the correct host/target pair.
    dll_path = os.path.join(cl_dir, ESPXENGINE_DLL)
    if os.path.isfile(dll_path):
        return dll_path

    host_dir = os.path.dirname(cl_dir)
    target_dir = _HOST_TO_TARGET_DIR.get(os.path.basename(host_dir))
    if not target_dir:
        raise EspXEngineNotFound(f"Unknown MSVC toolset layout around {cl_path}")

    dll_path = os.path.join(host_dir, target_dir, ESPXENGINE_DLL)
    if os.path.isfile(dll_path):
        return dll_path

    raise EspXEngineNotFound(f"Unable to find {ESPXENGINE_DLL} for {cl_path}")


def find_ruleset_directory(cl_path: str):
    """Find the directory of rulesets that ships with the Visual Studio containing cl_path. None if it doesn't exist."""
    ruleset_directory = os.path.normpath(os.path.join(os.path.dirname(cl_path), *RULESET_DIRECTORY_FROM_COMPILER_DIR))
    return ruleset_directory if os.path.isdir(ruleset_directory) else None


def find_ruleset(ruleset_directory: typing.Optional[str], ruleset: typing.Optional[str]):
    """Resolve the configured ruleset, looking first at the given path, then among Visual Studio's official rulesets.

    Returns None, with a warning, if no ruleset is configured or it can't be found.
    """
    if not ruleset:
        log_warning(">>> No ruleset is configured.")
        return None

    if os.path.isfile(ruleset):
        return ruleset

    if ruleset_directory is None:
        log_warning(">>> Unable to find the official rulesets shipped with Visual Studio.")
        return None

    official_ruleset = os.path.join(ruleset_directory, os.path.basename(ruleset))
    if os.path.isfile(official_ruleset):
        return official_ruleset

    log_warning(f">>> Unable to find ruleset {ruleset}, locally or in {ruleset_directory}")
    return None


def get_common_analyze_arguments(cl_path: str, ruleset: typing.Optional[str], options: CompileCommandOptions):
    """Arguments shared by every analysis run with the given compiler."""
    # Flags reference here: https://docs.microsoft.com/en-us/cpp/build/reference/analyze-code-analysis
    args = ['/analyze:quiet', '/analyze:log:format:sarif']
    args.append(escape_argument('/analyze:plugin' + find_espxengine(cl_path)))

    ruleset_directory = find_ruleset_directory(cl_path)
    ruleset_path = find_ruleset(ruleset_directory, ruleset)
    if ruleset_path is not None:
        args.append(escape_argument('/analyze:ruleset' + ruleset_path))
        # Rulesets can include official rulesets by name.
        if ruleset_directory is not None:
            args.append(escape_argument('/analyze:rulesetdirectory' + ruleset_directory))
    else:
        log_warning(">>> Ruleset is not being used, all warnings will be enabled.")

    if options.use_external_includes:
        args.append('/analyze:external-')

    return args


def get_sarif_path(results_dir: str, source: str, used_names: typing.Dict[str, int]):
    """Pick a SARIF log path for a source, disambiguating sources that share a file name."""
    name = os.path.basename(source)
    count = used_names.get(name, 0)
    used_names[name] = count + 1
    if count:
        name = f'{name}.{count}'
    return os.path.join(results_dir, name + '.sarif')


def run_analysis(cl_path: str, arguments: typing.List[str]):
    """Run cl.exe with already escaped arguments. Returns the finished process.

    Windows limits command lines to 32767 characters; longer commands are passed through a response file instead (e.g. cl.exe @params_file.txt).
    """
    environment = os.environ.copy()
    environment['CAEmitSarifLog'] = '1'  # Emit SARIF compatible with GitHub code scanning.
    kwargs = dict(
        # MIN_PY=3.7: Replace PIPEs with capture_output.
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env=environment,
        encoding=locale.getpreferredencoding(),
        check=False,  # Failures are reported per file by the caller.
    )
    # cl.exe gets the command line verbatim; the arguments are already quoted for it.
    command_line = ' '.join([escape_argument(cl_path)] + arguments)

    try:
        return subprocess.run(command_line, **kwargs)
    except OSError as e:
        if getattr(e, 'winerror', None) != 206:  # Thrown when command is too long, despite the error message being "The filename or extension is too long".
            raise
        # tempfile.NamedTemporaryFile doesn't work because cl.exe can't open it while we hold it open, so we have to do cleanup ourselves.
        fd, path = tempfile.mkstemp(text=True)
        try:
            os.write(fd, ' '.join(arguments).encode())
            os.close(fd)
            return subprocess.run(f'{escape_argument(cl_path)} {escape_argument("@" + path)}', **kwargs)
        finally:
            os.remove(path)


def analyze_project(api: CMakeApi, results_dir: str, ruleset: typing.Optional[str], options: CompileCommandOptions, run=run_analysis):
    """Analyze every compile command of a loaded CMakeApi. Returns the number of sources analyzed."""
    common_args_by_compiler = {}
    used_sarif_names = {}
    analyzed = 0
    for compile_command in api.compile_commands_iterator(options):
        cl_path = compile_command.compiler.path
        if cl_path not in common_args_by_compiler:
            common_args_by_compiler[cl_path] = get_common_analyze_arguments(cl_path, ruleset, options)

        sarif_path = get_sarif_path(results_dir, compile_command.source, used_sarif_names)
        arguments = (list(compile_command.argument_list)
                     + common_args_by_compiler[cl_path]
                     + ['/c', escape_argument('/Fo' + results_dir + os.sep)]  # Compile only, keeping objects out of the way.
                     + [escape_argument('/analyze:log' + sarif_path), escape_argument(compile_command.source)])

        log_info(f">>> Analyzing {compile_command.source}")
        analysis_process = run(cl_path, arguments)
        if analysis_process.returncode:
            log_warning(f">>> cl.exe failed on {compile_command.source} (exit code {analysis_process.returncode}). Continuing gracefully...",
                        '\n' + (analysis_process.stdout or ''))
        analyzed += 1

    return analyzed


def main():
    try:
        build_dir = resolve_input_path('cmakeBuildDir', required=True)
        if not os.path.isdir(build_dir):
            raise InvalidInput(f"CMake build directory does not exist: {build_dir}. Ensure CMake is already configured.")
        results_dir = prepare_results_dir(resolve_input_path('results', required=True), get_bool_input('cleanSarif', True))
        options = CompileCommandOptions(use_external_includes=get_bool_input('useExternalIncludes', False))
        ruleset = resolve_input_path('ruleset')

        api = CMakeApi()
        api.load_api(build_dir)

        analyzed = analyze_project(api, results_dir, ruleset, options)
    except (CMakeApiError, AnalysisError) as e:
        log_error(f">>> {e}")
        sys.exit(1)

    if not analyzed:
        log_error(">>> No C/C++ files were found in the project that could be analyzed.")
        sys.exit(1)

    log_success(f">>> Finished analyzing {analyzed} source files. SARIF logs are in {results_dir}")


if __name__ == '__main__':
    main()
