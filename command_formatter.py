import dataclasses
import typing # MIN_PY=3.9: Switch e.g. typing.List[str] -> list[str]

from log import log_warning


def escape_argument(arg: str):
    """Quote a command-line argument for cl.exe, handling spaces and trailing backslashes.

    Follows the MS C runtime parsing rules (see windows_list2cmdline in CPython's subprocess.py, or search http://msdn.microsoft.com for "Parsing C++ Command-Line Arguments"):
    backslashes are literal unless they immediately precede a double quote, where each pair becomes one backslash and an odd one escapes the quote.
    So the trailing backslashes of e.g. a directory have to be doubled, or the closing quote we add would be eaten.
    """
    trailing_backslashes = len(arg) - len(arg.rstrip('\\'))
    return '"' + arg + '\\' * trailing_backslashes + '"'


@dataclasses.dataclass
class CompileGroup:
    """Sources of one target that are compiled with the same language, flags, includes and defines."""
    language: str
    fragments: typing.List[str] = dataclasses.field(default_factory=list)
    includes: typing.List[str] = dataclasses.field(default_factory=list)
    defines: typing.List[str] = dataclasses.field(default_factory=list)
    # Indexes into the owning target's sources.
    source_indexes: typing.List[int] = dataclasses.field(default_factory=list)

    @classmethod
    def from_reply(cls, group):
        """Build from a compileGroups entry of a codemodel target reply."""
        return cls(
            language=group['language'],
            fragments=[fragment['fragment'] for fragment in group.get('compileCommandFragments', [])],
            includes=[include['path'] for include in group.get('includes', [])],
            defines=[define['define'] for define in group.get('defines', [])],
            source_indexes=list(group.get('sourceIndexes', [])),
        )


@dataclasses.dataclass(frozen=True)
class CompileCommandOptions:
    # Pass includes with /external:I so that warnings in them are controlled by /external:W* rather than reported.
    use_external_includes: bool = False


class CommandFormatter:
    def __init__(self, options: CompileCommandOptions):
        self.options = options
        self._warned_no_external_includes = set()

    def _use_external_includes(self, compiler):
        if not self.options.use_external_includes:
            return False
        if compiler is None or compiler.supports_external_includes:
            return True
        # Just log once per compiler; subsequent messages wouldn't add anything.
        if compiler.path not in self._warned_no_external_includes:
            self._warned_no_external_includes.add(compiler.path)
            log_warning(f">>> {compiler.path} (version {compiler.version}) doesn't support /external:I.",
                        " Passing includes with /I instead.")
        return False

    def get_arguments(self, group: CompileGroup, compiler=None):
        """Assemble the arguments for a compile group: command fragments, then includes, then defines.

        Fragments are already formatted by CMake and are passed through as is. Includes and defines are quoted.
        compiler, if given, is the CompilerInfo the group will be compiled with, used to check support for /external:I.
        """
        arguments = list(group.fragments)

        include_flag = '/external:I' if self._use_external_includes(compiler) else '/I'
        arguments.extend(escape_argument(include_flag + include) for include in group.includes)

        arguments.extend(escape_argument('/D' + define) for define in group.defines)

        # TODO: handle precompileHeaders of the compile group.
        return arguments

    def format(self, group: CompileGroup, compiler=None):
        """Same as get_arguments, but joined into the single string cl.exe is given."""
        return ''.join(self.get_arguments(group, compiler))


def format_compile_group(group: CompileGroup, options: typing.Optional[CompileCommandOptions] = None):
    """One-off formatting of a compile group's arguments."""
    return CommandFormatter(options or CompileCommandOptions()).format(group)
