"""Capability toolkit handed to template setup scripts."""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from scaffoldkit.app.materialize import iter_template_files, read_text, render_value, token_pattern
from scaffoldkit.domain.boundary import BoundaryValidator
from scaffoldkit.domain.errors import SandboxError
from scaffoldkit.domain.manifest import TemplateManifest
from scaffoldkit.domain.selection import SelectionDocument

KeyPart = Union[str, int]
LogSink = Callable[[str, str], None]

_KEY_TOKEN = re.compile(r"\.?([^.\[\]]+)|\[(\d+)\]")


class ToolkitState:
    """Shared state behind every capability namespace of one sandbox run."""

    def __init__(
        self,
        boundary: BoundaryValidator,
        manifest: TemplateManifest,
        selections: SelectionDocument,
        *,
        assets: Optional[BoundaryValidator] = None,
        log_sink: Optional[LogSink] = None,
    ) -> None:
        self.boundary = boundary
        self.manifest = manifest
        self.selections = selections
        self.assets = assets
        self.logs: List[Tuple[str, str]] = []
        self._log_sink = log_sink
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def check_open(self, capability: str) -> None:
        if self._closed:
            raise SandboxError(
                f"toolkit is closed; '{capability}' can no longer be used",
                capability="toolkit",
            )

    def path(self, candidate: Any, capability: str, *, allow_root: bool = False) -> Path:
        self.check_open(capability)
        return self.boundary.resolve(candidate, capability=capability, allow_root=allow_root)

    def inputs(self) -> Dict[str, Any]:
        return dict(self.selections.placeholders)

    def log(self, level: str, message: str) -> None:
        self.logs.append((level, message))
        if self._log_sink is not None:
            self._log_sink(level, message)


@contextmanager
def _io(capability: str, path: Any) -> Iterator[None]:
    try:
        yield
    except (OSError, UnicodeDecodeError) as exc:
        raise SandboxError(f"{capability}: {exc}", capability=capability, path=str(path)) from exc


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data.encode("utf-8"))
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def _read_file(path: Path, capability: str, raw: Any) -> str:
    if not path.is_file():
        raise SandboxError(f"{capability}: '{raw}' is not a file", capability=capability, path=str(raw))
    with _io(capability, raw):
        return path.read_text(encoding="utf-8")


def _ensure_trailing_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


def parse_key_path(key: str, capability: str = "json") -> List[KeyPart]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    if not isinstance(key, str) or not key or key.startswith("."):
        raise SandboxError(f"{capability}: invalid key path {key!r}", capability=capability)
    parts: List[KeyPart] = []
    pos = 0
    while pos < len(key):
        match = _KEY_TOKEN.match(key, pos)
        if match is None:
            raise SandboxError(f"{capability}: invalid key path {key!r}", capability=capability)
        parts.append(match.group(1) if match.group(1) is not None else int(match.group(2)))
        pos = match.end()
    return parts


class FilesCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def read(self, path: str) -> str:
        target = self._state.path(path, "files.read")
        return _read_file(target, "files.read", path)

    def write(self, path: str, content: str, overwrite: bool = True) -> None:
        target = self._state.path(path, "files.write")
        if not isinstance(content, str):
            raise SandboxError("files.write: content must be a string", capability="files.write", path=path)
        if target.exists() and not overwrite:
            raise SandboxError(f"files.write: '{path}' already exists", capability="files.write", path=path)
        if target.is_dir():
            raise SandboxError(f"files.write: '{path}' is a directory", capability="files.write", path=path)
        with _io("files.write", path):
            _atomic_write(target, content)

    def copy(self, source: str, destination: str, overwrite: bool = True) -> None:
        origin = self._state.path(source, "files.copy")
        target = self._state.path(destination, "files.copy")
        if not origin.exists():
            raise SandboxError(f"files.copy: '{source}' does not exist", capability="files.copy", path=source)
        if target.exists() and not overwrite:
            raise SandboxError(f"files.copy: '{destination}' already exists", capability="files.copy", path=destination)
        with _io("files.copy", destination):
            target.parent.mkdir(parents=True, exist_ok=True)
            if origin.is_dir():
                shutil.copytree(origin, target, symlinks=True, dirs_exist_ok=overwrite)
            else:
                shutil.copy2(origin, target)

    def move(self, source: str, destination: str, overwrite: bool = False) -> None:
        origin = self._state.path(source, "files.move")
        target = self._state.path(destination, "files.move")
        if not origin.exists():
            raise SandboxError(f"files.move: '{source}' does not exist", capability="files.move", path=source)
        if target.exists():
            if not overwrite:
                raise SandboxError(f"files.move: '{destination}' already exists", capability="files.move", path=destination)
            with _io("files.move", destination):
                if target.is_dir():
                    shutil.rmtree(target)
                else:
                    target.unlink()
        with _io("files.move", destination):
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(origin, target)

    def remove(self, path: str) -> bool:
        target = self._state.path(path, "files.remove")
        if not target.exists():
            return False
        with _io("files.remove", path):
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        return True

    def ensure_dirs(self, *paths: str) -> None:
        for path in paths:
            target = self._state.path(path, "files.ensure_dirs")
            with _io("files.ensure_dirs", path):
                target.mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return self._state.path(path, "files.exists").exists()

    def list(self, path: str = ".") -> List[str]:
        target = self._state.path(path, "files.list", allow_root=True)
        if not target.is_dir():
            raise SandboxError(f"files.list: '{path}' is not a directory", capability="files.list", path=path)
        return sorted(entry.name for entry in target.iterdir())


class JsonCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def read(self, path: str) -> Any:
        target = self._state.path(path, "json.read")
        return self._load(target, path, "json.read")

    def write(self, path: str, data: Any) -> None:
        target = self._state.path(path, "json.write")
        self._dump(target, data, path, "json.write")

    def merge(self, path: str, patch: Mapping[str, Any]) -> Any:
        """Deep-merge ``patch`` into the object stored at ``path``."""
        target = self._state.path(path, "json.merge")
        if not isinstance(patch, Mapping):
            raise SandboxError("json.merge: patch must be an object", capability="json.merge", path=path)
        current = self._load(target, path, "json.merge") if target.exists() else {}
        if not isinstance(current, dict):
            raise SandboxError(f"json.merge: '{path}' does not hold an object", capability="json.merge", path=path)
        merged = _deep_merge(current, patch)
        self._dump(target, merged, path, "json.merge")
        return merged

    def set(self, path: str, key: str, value: Any) -> None:
        target = self._state.path(path, "json.set")
        data = self._load(target, path, "json.set") if target.exists() else {}
        parts = parse_key_path(key, "json.set")
        container = _walk(data, parts[:-1], create=True, capability="json.set")
        _assign(container, parts[-1], value, "json.set")
        self._dump(target, data, path, "json.set")

    def remove(self, path: str, key: str) -> bool:
        target = self._state.path(path, "json.remove")
        data = self._load(target, path, "json.remove")
        parts = parse_key_path(key, "json.remove")
        container = _walk(data, parts[:-1], create=False, capability="json.remove")
        last = parts[-1]
        if isinstance(container, dict) and isinstance(last, str) and last in container:
            del container[last]
        elif isinstance(container, list) and isinstance(last, int) and last < len(container):
            del container[last]
        else:
            return False
        self._dump(target, data, path, "json.remove")
        return True

    def add_to_array(self, path: str, key: str, value: Any, unique: bool = True) -> bool:
        target = self._state.path(path, "json.add_to_array")
        data = self._load(target, path, "json.add_to_array") if target.exists() else {}
        parts = parse_key_path(key, "json.add_to_array")
        container = _walk(data, parts[:-1], create=True, capability="json.add_to_array")
        last = parts[-1]
        if isinstance(container, dict) and isinstance(last, str):
            array = container.setdefault(last, [])
        elif isinstance(container, list) and isinstance(last, int) and last < len(container):
            array = container[last]
        else:
            raise SandboxError(f"json.add_to_array: cannot reach '{key}'", capability="json.add_to_array", path=path)
        if not isinstance(array, list):
            raise SandboxError(f"json.add_to_array: '{key}' is not an array", capability="json.add_to_array", path=path)
        if unique and value in array:
            return False
        array.append(value)
        self._dump(target, data, path, "json.add_to_array")
        return True

    @staticmethod
    def _load(target: Path, raw: str, capability: str) -> Any:
        text = _read_file(target, capability, raw)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise SandboxError(f"{capability}: '{raw}' is not valid JSON: {exc}", capability=capability, path=raw) from exc

    @staticmethod
    def _dump(target: Path, data: Any, raw: str, capability: str) -> None:
        try:
            text = json.dumps(data, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as exc:
            raise SandboxError(f"{capability}: value is not JSON serialisable: {exc}", capability=capability, path=raw) from exc
        with _io(capability, raw):
            _atomic_write(target, text + "\n")


def _deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        elif isinstance(value, Mapping):
            result[key] = _deep_merge({}, value)
        else:
            result[key] = value
    return result


def _walk(data: Any, parts: Sequence[KeyPart], *, create: bool, capability: str) -> Any:
    current = data
    for part in parts:
        if isinstance(part, str) and isinstance(current, dict):
            if part not in current:
                if not create:
                    return None
                current[part] = {}
            current = current[part]
        elif isinstance(part, int) and isinstance(current, list) and part < len(current):
            current = current[part]
        elif create:
            raise SandboxError(f"{capability}: cannot descend into {part!r}", capability=capability)
        else:
            return None
    return current


def _assign(container: Any, key: KeyPart, value: Any, capability: str) -> None:
    if isinstance(container, dict) and isinstance(key, str):
        container[key] = value
    elif isinstance(container, list) and isinstance(key, int) and key < len(container):
        container[key] = value
    elif isinstance(container, list) and isinstance(key, int) and key == len(container):
        container.append(value)
    else:
        raise SandboxError(f"{capability}: cannot assign {key!r}", capability=capability)


class PlaceholdersCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def replace_in_file(self, path: str, values: Optional[Mapping[str, Any]] = None) -> bool:
        target = self._state.path(path, "placeholders.replace_in_file")
        return self._replace(target, path, values, "placeholders.replace_in_file")

    def replace_all(self, values: Mapping[str, Any], paths: Optional[Sequence[str]] = None) -> List[str]:
        if not isinstance(values, Mapping):
            raise SandboxError("placeholders.replace_all: values must be a mapping", capability="placeholders.replace_all")
        return self._replace_many(values, paths, "placeholders.replace_all")

    def apply_inputs(self, paths: Optional[Sequence[str]] = None) -> List[str]:
        return self._replace_many(None, paths, "placeholders.apply_inputs")

    def _replace_many(self, values: Optional[Mapping[str, Any]], paths: Optional[Sequence[str]], capability: str) -> List[str]:
        self._state.check_open(capability)
        root = self._state.boundary.root
        if paths is None:
            candidates = [relative.as_posix() for relative in iter_template_files(root)]
        else:
            candidates = list(paths)
        changed: List[str] = []
        for candidate in candidates:
            target = self._state.path(candidate, capability)
            if self._replace(target, candidate, values, capability):
                changed.append(candidate)
        return changed

    def _replace(self, target: Path, raw: str, values: Optional[Mapping[str, Any]], capability: str) -> bool:
        if not target.is_file():
            raise SandboxError(f"{capability}: '{raw}' is not a file", capability=capability, path=raw)
        with _io(capability, raw):
            text = read_text(target)
        if text is None:
            return False
        mapping = self._state.inputs() if values is None else dict(values)
        pattern = token_pattern(self._state.manifest)

        def replace(match: "re.Match[str]") -> str:
            token = match.group(1)
            if token in mapping and mapping[token] is not None:
                return render_value(mapping[token])
            return match.group(0)

        updated = pattern.sub(replace, text)
        if updated == text:
            return False
        with _io(capability, raw):
            _atomic_write(target, updated)
        return True


class TextCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def insert_after(self, path: str, marker: str, block: str) -> bool:
        target = self._state.path(path, "text.insert_after")
        text = _read_file(target, "text.insert_after", path)
        if block in text:
            return False
        lines = text.splitlines(keepends=True)
        for index, line in enumerate(lines):
            if marker in line:
                if not line.endswith("\n"):
                    lines[index] = line + "\n"
                lines.insert(index + 1, _ensure_trailing_newline(block))
                with _io("text.insert_after", path):
                    _atomic_write(target, "".join(lines))
                return True
        raise SandboxError(
            f"text.insert_after: marker {marker!r} not found in '{path}'",
            capability="text.insert_after",
            path=path,
        )

    def ensure_block(self, path: str, block: str) -> bool:
        target = self._state.path(path, "text.ensure_block")
        text = _read_file(target, "text.ensure_block", path) if target.exists() else ""
        if block in text:
            return False
        with _io("text.ensure_block", path):
            _atomic_write(target, _ensure_trailing_newline(text) + _ensure_trailing_newline(block))
        return True

    def replace_between(self, path: str, start: str, end: str, content: str) -> bool:
        target = self._state.path(path, "text.replace_between")
        text = _read_file(target, "text.replace_between", path)
        begin = text.find(start)
        if begin < 0:
            raise SandboxError(f"text.replace_between: marker {start!r} not found", capability="text.replace_between", path=path)
        inner_start = begin + len(start)
        finish = text.find(end, inner_start)
        if finish < 0:
            raise SandboxError(f"text.replace_between: marker {end!r} not found", capability="text.replace_between", path=path)
        inner = "\n" + _ensure_trailing_newline(content) if content else "\n"
        updated = text[:inner_start] + inner + text[finish:]
        if updated == text:
            return False
        with _io("text.replace_between", path):
            _atomic_write(target, updated)
        return True

    def append_lines(self, path: str, lines: Sequence[str], unique: bool = True) -> int:
        target = self._state.path(path, "text.append_lines")
        text = _read_file(target, "text.append_lines", path) if target.exists() else ""
        existing = set(text.splitlines())
        additions: List[str] = []
        for line in lines:
            if unique and (line in existing or line in additions):
                continue
            additions.append(line)
        if not additions:
            return 0
        with _io("text.append_lines", path):
            _atomic_write(target, _ensure_trailing_newline(text) + "\n".join(additions) + "\n")
        return len(additions)

    def replace(self, path: str, search: str, replacement: str, ensure_match: bool = False) -> int:
        target = self._state.path(path, "text.replace")
        text = _read_file(target, "text.replace", path)
        count = text.count(search) if search else 0
        if count == 0:
            if ensure_match:
                raise SandboxError(f"text.replace: {search!r} not found in '{path}'", capability="text.replace", path=path)
            return 0
        with _io("text.replace", path):
            _atomic_write(target, text.replace(search, replacement))
        return count


class TemplatesCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def render_string(self, template: str, data: Optional[Mapping[str, Any]] = None) -> str:
        self._state.check_open("templates.render_string")
        values = self._state.inputs()
        values.update(data or {})
        pattern = token_pattern(self._state.manifest)

        def replace(match: "re.Match[str]") -> str:
            token = match.group(1)
            if token in values and values[token] is not None:
                return render_value(values[token])
            return match.group(0)

        return pattern.sub(replace, template)

    def render_file(
        self,
        source: str,
        destination: str,
        data: Optional[Mapping[str, Any]] = None,
        overwrite: bool = True,
    ) -> None:
        """Render an author asset from ``__scaffold__`` into the project."""
        self._state.check_open("templates.render_file")
        assets = self._state.assets
        if assets is None:
            raise SandboxError(
                "templates.render_file: template ships no author assets",
                capability="templates.render_file",
                path=source,
            )
        origin = assets.resolve(source, capability="templates.render_file")
        body = _read_file(origin, "templates.render_file", source)
        target = self._state.path(destination, "templates.render_file")
        if target.exists() and not overwrite:
            raise SandboxError(
                f"templates.render_file: '{destination}' already exists",
                capability="templates.render_file",
                path=destination,
            )
        with _io("templates.render_file", destination):
            _atomic_write(target, self.render_string(body, data))


class InputsCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def get(self, token: str, default: Any = None) -> Any:
        self._state.check_open("inputs.get")
        return self._state.selections.placeholders.get(token, default)

    def all(self) -> Dict[str, Any]:
        self._state.check_open("inputs.all")
        return self._state.inputs()


class OptionsCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def has(self, dimension: str, value: Optional[str] = None) -> bool:
        self._state.check_open("options.has")
        selected = self._state.selections.selected_values(dimension)
        if value is None:
            return bool(selected)
        return value in selected

    def value(self, dimension: str) -> Any:
        self._state.check_open("options.value")
        choice = self._state.selections.choices.get(dimension)
        if isinstance(choice, tuple):
            return list(choice)
        return choice

    def when(self, dimension: str, value: str, callback: Callable[[], Any]) -> Any:
        if not self.has(dimension, value):
            return None
        return callback()


class LoggerCapability:
    def __init__(self, state: ToolkitState) -> None:
        self._state = state

    def info(self, message: Any) -> None:
        self._state.check_open("logger.info")
        self._state.log("info", str(message))

    def warn(self, message: Any) -> None:
        self._state.check_open("logger.warn")
        self._state.log("warn", str(message))


class SetupToolkit:
    """Namespaces exposed to ``setup(context, toolkit)``."""

    def __init__(self, state: ToolkitState) -> None:
        self.files = FilesCapability(state)
        self.json = JsonCapability(state)
        self.placeholders = PlaceholdersCapability(state)
        self.text = TextCapability(state)
        self.templates = TemplatesCapability(state)
        self.inputs = InputsCapability(state)
        self.options = OptionsCapability(state)
        self.logger = LoggerCapability(state)


__all__ = ["SetupToolkit", "ToolkitState", "parse_key_path"]
