#!/usr/bin/env python3
"""Incremental GLSL -> SPIR-V compilation.

Shaders under a search root are compiled with glslc into a mirrored tree under
an output root. A small JSON record of source modification times is kept
between runs so that only new or modified shaders are handed to the compiler.
"""

import argparse
import contextlib
import enum
import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

RECORD_VERSION = 1


class WranglerError(Exception):
    pass


class CompilationError(WranglerError):
    def __init__(self, path, stderr=''):
        self.path = path
        self.stderr = stderr
        message = 'Failed to compile {}'.format(path)
        if stderr:
            message = '{}:\n{}'.format(message, stderr.rstrip())
        super().__init__(message)


class CompilerNotFound(WranglerError):
    pass


class ShaderKind(enum.Enum):
    VERTEX = 'vertex'
    FRAGMENT = 'fragment'
    COMPUTE = 'compute'
    GEOMETRY = 'geometry'
    TESS_CONTROL = 'tess_control'
    TESS_EVALUATION = 'tess_evaluation'

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def stage(self) -> str:
        """Value for glslc's ``-fshader-stage=``."""
        return _STAGES[self]

    @classmethod
    def from_name(cls, name: str) -> 'ShaderKind':
        name = name.strip().lower().lstrip('.')
        for kind in cls:
            if name in (kind.value, kind.extension):
                return kind
        raise ValueError('Unknown shader kind: {!r}'.format(name))


_EXTENSIONS = {
    ShaderKind.VERTEX: 'vert',
    ShaderKind.FRAGMENT: 'frag',
    ShaderKind.COMPUTE: 'comp',
    ShaderKind.GEOMETRY: 'geom',
    ShaderKind.TESS_CONTROL: 'tesc',
    ShaderKind.TESS_EVALUATION: 'tese',
}

_STAGES = {
    ShaderKind.VERTEX: 'vertex',
    ShaderKind.FRAGMENT: 'fragment',
    ShaderKind.COMPUTE: 'compute',
    ShaderKind.GEOMETRY: 'geometry',
    ShaderKind.TESS_CONTROL: 'tesscontrol',
    ShaderKind.TESS_EVALUATION: 'tesseval',
}


@dataclass
class Instructions:
    to_compile: Sequence[ShaderKind]
    search_root: str
    output_root: str
    record_path: str
    # If false, failures are logged and the run carries on with the next file.
    compilation_error_terminates: bool


@dataclass
class CompilationCandidate:
    location: str
    relative: str
    shader_kind: ShaderKind
    modified: int


@dataclass
class Diff:
    unchanged: List[CompilationCandidate] = field(default_factory=list)
    needs_compile: List[CompilationCandidate] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    compiled: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[CompilationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class Record:
    """Modification times (ns) of sources, keyed by path relative to the search root."""

    def __init__(self, modified_times: Optional[Dict[str, int]] = None):
        self.modified_times = dict(modified_times or {})

    @classmethod
    def load(cls, path) -> 'Record':
        if not os.path.exists(path):
            logger.debug('No record at {}, starting from scratch'.format(path))
            return cls()
        with open(path, 'rb') as f:
            raw = f.read()
        try:
            data = json.loads(raw.decode('utf-8'))
            times = data['modified_times']
            return cls({str(k): int(v) for k, v in times.items()})
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning('Ignoring unreadable record {}, every shader will be rebuilt'.format(path))
            return cls()

    def get(self, relative: str) -> Optional[int]:
        return self.modified_times.get(relative)

    def log(self, relative: str, modified: int):
        self.modified_times[relative] = modified

    def forget(self, relative: str):
        self.modified_times.pop(relative, None)

    def save(self, path):
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        payload = {
            'version': RECORD_VERSION,
            'modified_times': dict(sorted(self.modified_times.items())),
        }
        fd, tmp_path = tempfile.mkstemp(prefix='.record-', suffix='.tmp', dir=directory)
        try:
            try:
                f = os.fdopen(fd, 'w', encoding='utf-8')
            except BaseException:
                os.close(fd)
                raise
            with f:
                json.dump(payload, f, indent=2)
                f.write('\n')
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise


def get_mtime(fpath) -> int:
    return os.stat(fpath).st_mtime_ns


def deduplicate_kinds(kinds: Sequence[ShaderKind]) -> List[ShaderKind]:
    out = []
    for kind in kinds:
        if kind not in out:
            out.append(kind)
    return out


def _relative_key(path, root) -> str:
    return os.path.relpath(path, root).replace(os.sep, '/')


def find_shaders_of_kind(kind: ShaderKind, search_root) -> List[CompilationCandidate]:
    suffix = '.{}'.format(kind.extension)
    candidates = []
    for root, dirs, files in os.walk(search_root):
        for name in files:
            if not name.endswith(suffix):
                continue
            file = os.path.join(root, name)
            candidates.append(CompilationCandidate(
                location=file,
                relative=_relative_key(file, search_root),
                shader_kind=kind,
                modified=get_mtime(file),
            ))
    return candidates


def find_shaders(instructions: Instructions) -> List[CompilationCandidate]:
    search_root = instructions.search_root
    if not os.path.exists(search_root):
        raise FileNotFoundError('Search root does not exist: {}'.format(search_root))
    if not os.path.isdir(search_root):
        raise NotADirectoryError('Search root is not a directory: {}'.format(search_root))

    shaders = []
    for kind in deduplicate_kinds(instructions.to_compile):
        shaders.extend(find_shaders_of_kind(kind, search_root))
    shaders.sort(key=lambda c: c.relative)
    return shaders


def check_against_record(candidates: Sequence[CompilationCandidate], record: Record, search_root) -> Diff:
    diff = Diff()
    for candidate in candidates:
        if record.get(candidate.relative) == candidate.modified:
            diff.unchanged.append(candidate)
        else:
            diff.needs_compile.append(candidate)

    seen = {c.relative for c in candidates}
    for relative in sorted(record.modified_times):
        if relative in seen:
            continue
        # Entries of kinds outside the current filter stay as long as the file exists.
        if not os.path.exists(os.path.join(search_root, *relative.split('/'))):
            diff.removed.append(relative)
    return diff


def output_path(instructions: Instructions, candidate: CompilationCandidate) -> str:
    stem, _ = os.path.splitext(candidate.relative)
    tail = '{}.spv_{}'.format(stem, candidate.shader_kind.extension)
    return os.path.join(instructions.output_root, *tail.split('/'))


def find_glslc(explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit

    env_glslc = os.environ.get('GLSLC')
    if env_glslc:
        return env_glslc

    exe_name = 'glslc.exe' if platform.system() == 'Windows' else 'glslc'
    sdk_path = os.environ.get('VULKAN_SDK')
    if sdk_path:
        for bin_dir in ('bin', 'Bin'):
            candidate = os.path.join(sdk_path, bin_dir, exe_name)
            if os.path.exists(candidate):
                return candidate

    glslc = shutil.which(exe_name)
    if glslc:
        return glslc

    raise CompilerNotFound(
        'glslc not found. Install the Vulkan SDK, set VULKAN_SDK or GLSLC, or pass --glslc.')


class GlslcCompiler:
    def __init__(self, executable: str):
        self.executable = executable

    def command(self, source, shader_kind: ShaderKind, destination) -> List[str]:
        return [
            self.executable,
            '-fshader-stage={}'.format(shader_kind.stage),
            '-o', str(destination),
            str(source),
        ]

    def __call__(self, source, shader_kind: ShaderKind, destination):
        cmd = self.command(source, shader_kind, destination)
        logger.debug(subprocess.list2cmdline(cmd))
        try:
            ret = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise CompilationError(source, 'could not run {}: {}'.format(self.executable, e)) from e
        if ret.stdout:
            logger.debug(ret.stdout.rstrip())
        if ret.returncode != 0:
            raise CompilationError(source, ret.stderr)


Compiler = Callable[[str, ShaderKind, str], None]


def run(instructions: Instructions, compiler: Optional[Compiler] = None) -> RunReport:
    candidates = find_shaders(instructions)
    record = Record.load(instructions.record_path)
    diff = check_against_record(candidates, record, instructions.search_root)

    report = RunReport(
        unchanged=[c.relative for c in diff.unchanged],
        removed=list(diff.removed),
    )
    for relative in diff.removed:
        record.forget(relative)
        logger.warning('{} was removed, its compiled output is left in {}'.format(
            relative, instructions.output_root))

    # Nothing to build, so don't bother locating glslc.
    if not diff.needs_compile:
        if diff.removed:
            record.save(instructions.record_path)
        logger.debug('All {} shaders are up to date'.format(len(diff.unchanged)))
        return report

    if compiler is None:
        compiler = GlslcCompiler(find_glslc())

    for candidate in diff.needs_compile:
        dst_file = output_path(instructions, candidate)
        os.makedirs(os.path.dirname(os.path.abspath(dst_file)), exist_ok=True)
        logger.info('Process {}'.format(candidate.location))
        try:
            compiler(candidate.location, candidate.shader_kind, dst_file)
        except CompilationError as e:
            if instructions.compilation_error_terminates:
                record.save(instructions.record_path)
                raise
            logger.warning(str(e))
            report.failed.append(e)
            continue
        record.log(candidate.relative, candidate.modified)
        report.compiled.append(candidate.relative)

    record.save(instructions.record_path)
    if report.failed:
        logger.warning('{} of {} shaders failed to compile'.format(
            len(report.failed), len(diff.needs_compile)))
    return report


def kind(name: str) -> ShaderKind:
    try:
        return ShaderKind.from_name(name)
    except ValueError as e:
        choices = ', '.join(k.value for k in ShaderKind)
        raise argparse.ArgumentTypeError('{} (choose from {})'.format(e, choices))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='shader-wrangler',
        description='Compile new and modified GLSL shaders to SPIR-V with glslc.')
    parser.add_argument('--search-root', default='shaders/src', help='GLSL sources (default: shaders/src)')
    parser.add_argument('--output-root', default='shaders/spv', help='SPIR-V output (default: shaders/spv)')
    parser.add_argument('--record', default=None,
                        help='modification time record (default: <output-root>/.shader_record.json)')
    parser.add_argument('--kind', action='append', dest='kinds', type=kind,
                        metavar='KIND',
                        help='shader kind to compile, by name or extension; repeatable '
                             '(default: vertex and fragment)')
    parser.add_argument('--keep-going', action='store_true',
                        help='log compilation failures and continue with the remaining shaders')
    parser.add_argument('--glslc', default=None, help='path to glslc (default: auto-detect)')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('-v', '--verbose', action='store_true')
    verbosity.add_argument('-q', '--quiet', action='store_true')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(message)s')

    instructions = Instructions(
        to_compile=args.kinds or [ShaderKind.VERTEX, ShaderKind.FRAGMENT],
        search_root=args.search_root,
        output_root=args.output_root,
        record_path=args.record or os.path.join(args.output_root, '.shader_record.json'),
        compilation_error_terminates=not args.keep_going,
    )

    try:
        compiler = GlslcCompiler(find_glslc(args.glslc)) if args.glslc else None
        run(instructions, compiler)
    except (WranglerError, OSError) as e:
        print('error: {}'.format(e), file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
