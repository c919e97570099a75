import sys
from pathlib import Path

import pytest

from elquest import recipes
from elquest.errors import BuildBackendError
from elquest.process import safe_run
from elquest.recipes import RecipeRepository


def test_safe_run_captures_output(tmp_path):
    rc, out, err = safe_run([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=tmp_path)
    assert rc == 0
    assert Path(out.strip()).resolve() == tmp_path.resolve()
    assert err == ""


def test_safe_run_missing_program():
    rc, out, err = safe_run(["elquest-no-such-program"])
    assert rc == 127
    assert out == ""
    assert err


def test_safe_run_timeout():
    rc, _, err = safe_run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=1)
    assert rc == 124
    assert "timeout after 1s" in err


def test_repository_clone_goes_through_safe_run(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, cwd=None, env=None, timeout=None):
        calls.append((cmd, timeout))
        return 128, "", "fatal: repository not found"

    monkeypatch.setattr(recipes, "safe_run", fake_run)
    repo = RecipeRepository(tmp_path / "melpa", remote="https://example/melpa.git", branch="main", timeout=42)
    with pytest.raises(BuildBackendError, match="repository not found"):
        repo.ensure_checkout()
    assert calls == [(["git", "clone", "--depth", "1", "--branch", "main", "https://example/melpa.git", str(tmp_path / "melpa")], 42)]
