import json

from gatewayd.workspace import ensure_config_file, seed_workspace


def test_minimal_config_written_without_template(settings):
    assert ensure_config_file(settings) is True
    data = json.loads(settings.config_file.read_text())
    assert data["gateway"]["mode"] == "local"
    assert data["agents"]["defaults"]["workspace"] == str(settings.workspace_dir)


def test_template_config_used_when_present(settings):
    settings.template_dir.mkdir(parents=True)
    (settings.template_dir / "moltbot.json.template").write_text('{"from": "template"}')
    assert ensure_config_file(settings) is True
    assert json.loads(settings.config_file.read_text()) == {"from": "template"}


def test_existing_config_left_alone(settings):
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text('{"mine": 1}')
    assert ensure_config_file(settings) is False
    assert json.loads(settings.config_file.read_text()) == {"mine": 1}


def test_seed_workspace_copies_only_missing(settings):
    templates = settings.template_dir / "workspace"
    (templates / "memory").mkdir(parents=True)
    (templates / "SOUL.md").write_text("template soul")
    (templates / "USER.md").write_text("template user")
    (templates / "memory" / "notes.md").write_text("notes")
    settings.workspace_dir.mkdir(parents=True)
    (settings.workspace_dir / "SOUL.md").write_text("my soul")

    created = seed_workspace(settings)

    assert created == ["USER.md", "memory/notes.md"]
    assert (settings.workspace_dir / "SOUL.md").read_text() == "my soul"
    assert (settings.workspace_dir / ".learnings").is_dir()


def test_seed_workspace_without_templates(settings):
    assert seed_workspace(settings) == []
