import pytest
from git import Actor, Repo

from extraction_queue.core.git import (
    CloneError,
    clone_command,
    clone_repository,
    list_files,
    parse_github_url,
)


@pytest.fixture
def origin(tmp_path):
    path = tmp_path / "origin"
    repo = Repo.init(path)
    (path / "README.md").write_text("hello")
    (path / "src").mkdir()
    (path / "src" / "app.py").write_text("print('hi')")
    repo.index.add(["README.md", "src/app.py"])
    author = Actor("Test", "test@example.com")
    commit = repo.index.commit("initial", author=author, committer=author)
    return path, commit.hexsha


@pytest.mark.asyncio
async def test_clone_local_repository(origin, tmp_path):
    path, sha = origin
    dest = tmp_path / "clone"
    (dest / "stale").mkdir(parents=True)

    lines = []

    async def on_line(line):
        lines.append(line)

    head = await clone_repository(f"file://{path}", dest, depth=1, attempts=1, on_line=on_line)

    assert head == sha
    assert not (dest / "stale").exists()
    assert [f for f in list_files(dest) if not f.startswith(".git")] == ["README.md", "src/app.py"]
    assert lines


@pytest.mark.asyncio
async def test_clone_failure_raises_clone_error(tmp_path):
    dest = tmp_path / "clone"
    with pytest.raises(CloneError):
        await clone_repository(f"file://{tmp_path / 'missing'}", dest, attempts=1)
    assert dest.is_dir()
    assert list(dest.iterdir()) == []


def test_clone_command_flags(tmp_path):
    argv = clone_command("https://github.com/o/r", tmp_path / "d", depth=1, branch="dev")
    assert argv[1:] == [
        "clone", "--progress", "--depth", "1", "--branch", "dev",
        "https://github.com/o/r", str(tmp_path / "d"),
    ]

    argv = clone_command("https://github.com/o/r", tmp_path / "d", depth=None)
    assert "--depth" not in argv


def test_parse_github_url():
    info = parse_github_url("git@github.com:owner/repo.git")
    assert info.url == "https://github.com/owner/repo"
    assert parse_github_url("https://gitlab.com/owner/repo") is None


def test_list_files_missing_dir(tmp_path):
    assert list_files(tmp_path / "nope") == []
