from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from scaffoldkit.app.sandbox import (
    SandboxContext,
    SandboxState,
    SetupSandbox,
    SetupToolkit,
    ToolkitState,
    check_source,
)
from scaffoldkit.app.sandbox.loader import INTROSPECTION_ATTRIBUTES
from scaffoldkit.app.validation.manifest import ManifestValidator
from scaffoldkit.domain.boundary import BoundaryValidator
from scaffoldkit.domain.errors import SandboxError
from scaffoldkit.domain.selection import SelectionDocument
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import iter_events


def make_document() -> SelectionDocument:
    return SelectionDocument(
        template_id="acme/webapp",
        choices={"deployment": "linode", "database": "postgres", "features": ["auth"]},
        placeholders={"PROJECT_NAME": "demo", "PORT": 8080},
    )


def make_sandbox(settings: RuntimeSettings, root: Path, project_dir: Path, payload: Dict[str, Any]) -> SetupSandbox:
    project_dir.mkdir(parents=True, exist_ok=True)
    manifest = ManifestValidator().validate(payload).manifest
    context = SandboxContext(project_dir=str(project_dir), project_name="demo", resolved_selections=make_document())
    return SetupSandbox(settings, template_root=root, manifest=manifest, context=context)


def setup_script(*lines: str) -> str:
    body = "\n".join(f"    {line}" for line in lines) or "    pass"
    return f"def setup(context, toolkit):\n{body}\n"


def test_template_without_script_is_skipped(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    sandbox = make_sandbox(runtime_settings, template_factory(), tmp_path / "project", manifest_payload)
    outcome = sandbox.run()
    assert not outcome.ran
    assert outcome.ok
    assert sandbox.state is SandboxState.TORN_DOWN


def test_toolkit_operations_edit_the_project(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    (project / "package.json").write_text(json.dumps({"name": "x"}), encoding="utf-8")
    (project / "README.md").write_text("# demo\n<!-- features -->\n", encoding="utf-8")
    (project / ".env").write_text("A=1\n", encoding="utf-8")
    script = setup_script(
        'toolkit.json.merge("package.json", {"scripts": {"dev": "vite"}})',
        'toolkit.json.set("package.json", "scripts.build", "vite build")',
        'toolkit.json.add_to_array("package.json", "keywords", "demo")',
        'toolkit.text.insert_after("README.md", "<!-- features -->", "- auth")',
        'toolkit.text.insert_after("README.md", "<!-- features -->", "- auth")',
        'toolkit.text.append_lines(".env", ["A=1", "B=2"])',
        'toolkit.files.ensure_dirs("src/lib")',
        'toolkit.files.write("src/lib/name.txt", context.project_name)',
        'if toolkit.options.has("features", "auth"):',
        '    toolkit.files.write("AUTH.md", toolkit.templates.render_string("auth for ⦃PROJECT_NAME⦄ on ⦃PORT⦄"))',
        'toolkit.logger.info("configured")',
        'toolkit.logger.warn("remember to set secrets")',
        'return toolkit.inputs.get("PORT")',
    )
    root = template_factory(setup=script)
    sandbox = make_sandbox(runtime_settings, root, project, manifest_payload)

    outcome = sandbox.run()

    assert outcome.ok, outcome.error
    assert outcome.result == 8080
    assert outcome.warnings == ("setup: remember to set secrets",)
    assert json.loads((project / "package.json").read_text(encoding="utf-8")) == {
        "name": "x",
        "scripts": {"dev": "vite", "build": "vite build"},
        "keywords": ["demo"],
    }
    assert (project / "README.md").read_text(encoding="utf-8") == "# demo\n<!-- features -->\n- auth\n"
    assert (project / ".env").read_text(encoding="utf-8") == "A=1\nB=2\n"
    assert (project / "src" / "lib" / "name.txt").read_text(encoding="utf-8") == "demo"
    assert (project / "AUTH.md").read_text(encoding="utf-8") == "auth for demo on 8080"
    assert sandbox.state is SandboxState.TORN_DOWN
    assert outcome.scratch_removed
    assert not sandbox.scratch_dir.exists()


def test_render_file_reads_author_assets(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    script = setup_script('toolkit.templates.render_file("snippet.md", "docs/HELLO.md")')
    root = template_factory(setup=script, assets={"snippet.md": "Hello ⦃PROJECT_NAME⦄\n"})
    project = tmp_path / "project"
    outcome = make_sandbox(runtime_settings, root, project, manifest_payload).run()
    assert outcome.ok, outcome.error
    assert (project / "docs" / "HELLO.md").read_text(encoding="utf-8") == "Hello demo\n"
    assert (root / "__scaffold__" / "snippet.md").exists()


def test_render_file_cannot_leave_the_assets(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    script = setup_script('toolkit.templates.render_file("../template.json", "copied.json")')
    root = template_factory(setup=script, assets={"snippet.md": "x\n"})
    project = tmp_path / "project"
    outcome = make_sandbox(runtime_settings, root, project, manifest_payload).run()
    assert outcome.error is not None
    assert outcome.error.capability == "templates.render_file"
    assert not (project / "copied.json").exists()


@pytest.mark.parametrize("target", ["../../etc/passwd", "../outside.txt"])
def test_relative_escape_is_rejected(runtime_settings, template_factory, manifest_payload, tmp_path: Path, target: str) -> None:
    root = template_factory(setup=setup_script(f"toolkit.files.write({target!r}, 'owned')"))
    sandbox = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload)
    outcome = sandbox.run()
    assert isinstance(outcome.error, SandboxError)
    assert outcome.error.capability == "files.write"
    assert outcome.error.path == target
    assert any(warning.startswith("setup script failed:") for warning in outcome.warnings)
    assert not (tmp_path / "outside.txt").exists()
    assert sandbox.state is SandboxState.TORN_DOWN
    assert outcome.scratch_removed
    events = [evt for evt in iter_events(runtime_settings) if evt["event"] == "boundary.violation"]
    assert events and events[0]["payload"]["path"] == target


def test_absolute_path_outside_is_rejected(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    outside = tmp_path / "absolute.txt"
    root = template_factory(setup=setup_script(f"toolkit.files.write({str(outside)!r}, 'owned')"))
    outcome = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload).run()
    assert outcome.error is not None
    assert not outside.exists()


def test_symlink_pointing_outside_is_rejected(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    project = tmp_path / "project"
    project.mkdir()
    (project / "link").symlink_to(elsewhere, target_is_directory=True)
    root = template_factory(setup=setup_script("toolkit.files.write('link/owned.txt', 'owned')"))
    outcome = make_sandbox(runtime_settings, root, project, manifest_payload).run()
    assert outcome.error is not None
    assert outcome.error.path == "link/owned.txt"
    assert not (elsewhere / "owned.txt").exists()


def test_unexpected_exception_becomes_sandbox_error(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    root = template_factory(setup=setup_script("toolkit.files.write('before.txt', 'kept')", "raise RuntimeError('boom')"))
    project = tmp_path / "project"
    sandbox = make_sandbox(runtime_settings, root, project, manifest_payload)
    outcome = sandbox.run()
    assert outcome.error.capability == "setup"
    assert isinstance(outcome.error.__cause__, RuntimeError)
    assert "boom" in outcome.warnings[-1]
    assert (project / "before.txt").read_text(encoding="utf-8") == "kept"
    assert not sandbox.scratch_dir.exists()
    events = [evt["event"] for evt in iter_events(runtime_settings)]
    assert "sandbox.failed" in events


def test_toolkit_is_revoked_after_teardown(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    root = template_factory(setup=setup_script("return toolkit.files"))
    outcome = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload).run()
    assert outcome.ok
    with pytest.raises(SandboxError) as excinfo:
        outcome.result.write("late.txt", "too late")
    assert excinfo.value.capability == "toolkit"
    assert not (tmp_path / "project" / "late.txt").exists()


def test_closed_state_rejects_every_namespace(tmp_path: Path, manifest_payload) -> None:
    manifest = ManifestValidator().validate(manifest_payload).manifest
    state = ToolkitState(BoundaryValidator(tmp_path), manifest, make_document())
    toolkit = SetupToolkit(state)
    assert toolkit.options.value("features") == ["auth"]
    state.close()
    for call in (
        lambda: toolkit.options.value("features"),
        lambda: toolkit.inputs.all(),
        lambda: toolkit.logger.info("x"),
        lambda: toolkit.json.read("x.json"),
    ):
        with pytest.raises(SandboxError) as excinfo:
            call()
        assert excinfo.value.capability == "toolkit"


def test_sandbox_runs_once(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    root = template_factory(setup=setup_script())
    sandbox = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload)
    assert sandbox.run().ok
    with pytest.raises(SandboxError):
        sandbox.run()


@pytest.mark.parametrize(
    "source",
    [
        "import os\ndef setup(context, toolkit):\n    pass\n",
        "from pathlib import Path\ndef setup(context, toolkit):\n    pass\n",
        "def setup(context, toolkit):\n    return toolkit.__class__\n",
        "def setup(context, toolkit):\n    return toolkit.files._state\n",
        "def setup(context, toolkit):\n    return __import__('os')\n",
        "class Helper:\n    pass\n",
        "def setup(context, toolkit:\n",
    ],
)
def test_loader_rejects_forbidden_constructs(source: str) -> None:
    with pytest.raises(SandboxError) as excinfo:
        check_source(source, "_setup.py")
    assert excinfo.value.capability == "loader"


def test_rejected_script_still_tears_down(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    root = template_factory(setup="import os\ndef setup(context, toolkit):\n    os.remove('x')\n")
    sandbox = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload)
    outcome = sandbox.run()
    assert outcome.error.capability == "loader"
    assert sandbox.state is SandboxState.TORN_DOWN
    assert not sandbox.scratch_dir.exists()


def test_missing_builtins_are_unavailable(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    root = template_factory(setup=setup_script("open('/etc/hostname')"))
    outcome = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload).run()
    assert outcome.error.capability == "setup"
    assert isinstance(outcome.error.__cause__, NameError)


def test_context_exposes_plain_values(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    project = tmp_path / "project"
    root = template_factory(setup=setup_script("return context.project_dir"))
    outcome = make_sandbox(runtime_settings, root, project, manifest_payload).run()
    assert outcome.ok, outcome.error
    assert outcome.result == str(project)
    assert type(outcome.result) is str


def test_context_project_dir_cannot_write_outside(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    script = setup_script("context.project_dir.parent.joinpath('pwned.txt').write_text('owned')")
    root = template_factory(setup=script)
    outcome = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload).run()
    assert outcome.error is not None
    assert outcome.error.capability == "setup"
    assert isinstance(outcome.error.__cause__, AttributeError)
    assert not (tmp_path / "pwned.txt").exists()


@pytest.mark.parametrize("attribute", sorted(INTROSPECTION_ATTRIBUTES) + ["co_consts", "co_names"])
def test_loader_rejects_interpreter_attributes(attribute: str) -> None:
    source = f"def setup(context, toolkit):\n    return toolkit.files.{attribute}\n"
    with pytest.raises(SandboxError) as excinfo:
        check_source(source, "_setup.py")
    assert excinfo.value.capability == "loader"
    assert attribute in excinfo.value.message


def test_generator_frames_cannot_reach_host_globals(runtime_settings, template_factory, manifest_payload, tmp_path: Path) -> None:
    victim = tmp_path / "victim"
    victim.mkdir()
    script = (
        "box = []\n"
        "def gen():\n"
        "    yield box[0].gi_frame.f_back\n"
        "def setup(context, toolkit):\n"
        "    g = gen()\n"
        "    box.append(g)\n"
        "    for frame in g:\n"
        "        break\n"
        f"    frame.f_back.f_globals['shutil'].rmtree({str(victim)!r})\n"
    )
    root = template_factory(setup=script)
    sandbox = make_sandbox(runtime_settings, root, tmp_path / "project", manifest_payload)
    outcome = sandbox.run()
    assert outcome.error is not None
    assert outcome.error.capability == "loader"
    assert victim.is_dir()
    assert sandbox.state is SandboxState.TORN_DOWN
