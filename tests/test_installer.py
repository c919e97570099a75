import pytest

from conftest import FakeBackend, FakeHost
from elquest.archive import read_index
from elquest.buildsystem import BuildOrchestrator
from elquest.errors import DependencyCycle, RecipeNotFound
from elquest.host import HostPackageManager
from elquest.installer import Installer
from elquest.recipes import Recipe, RecipeCache, RecipeRepository, RecipeResolver


def _setup(context, packages, installed=(), db=None):
    recipes = context.recipes_dir / "recipes"
    recipes.mkdir(parents=True, exist_ok=True)
    for name in packages:
        (recipes / name).write_text(f'({name} :fetcher git :url "https://example/{name}.git")', encoding="utf-8")
    host = FakeHost(installed)
    host.register_archive_source(context.archive_name, context.archive_dir)
    backend = FakeBackend(packages)
    cache = RecipeCache(db) if db is not None else None
    installer = Installer(context, host, RecipeResolver(RecipeRepository(context.recipes_dir)),
                          BuildOrchestrator(context, backend), cache)
    return installer, host, backend


def test_dependency_chain_installs_leaves_first(context):
    installer, host, backend = _setup(context, {
        "a": ("1.0", [("b", "1.0")]),
        "b": ("1.0", [("c", "1.0")]),
        "c": ("1.0", []),
    })
    installer.install("a")
    assert host.install_calls == ["c", "b", "a"]
    assert sorted(read_index(context.archive_dir / "archive-contents").entries) == ["a", "b", "c"]
    assert host.refreshed == ["local"] * 3


def test_install_is_idempotent(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [])}, installed=["a"])
    installer.install("a")
    assert backend.checkouts == []
    assert host.install_calls == []
    assert not context.archive_dir.exists()
    assert not context.build_dir.exists()


def test_diamond_builds_shared_dependency_once(context):
    installer, host, backend = _setup(context, {
        "a": ("1.0", [("b", "1.0"), ("c", "1.0")]),
        "b": ("1.0", [("d", "1.0")]),
        "c": ("1.0", [("d", "1.0")]),
        "d": ("1.0", []),
    })
    installer.install("a")
    assert backend.checkouts.count("d") == 1
    assert host.install_calls == ["d", "b", "c", "a"]


def test_host_runtime_dependency_is_skipped(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [("emacs", "26.1")])})
    installer.install("a")
    assert backend.checkouts == ["a"]
    assert host.install_calls == ["a"]


def test_cycle_is_detected(context):
    installer, host, backend = _setup(context, {
        "a": ("1.0", [("b", "1.0")]),
        "b": ("1.0", [("a", "1.0")]),
    })
    with pytest.raises(DependencyCycle) as exc:
        installer.install("a")
    assert exc.value.chain == ["a", "b", "a"]
    assert host.install_calls == []


def test_mutual_dependency_on_installed_package_is_not_a_cycle(context):
    packages = {
        "a": ("1.0", [("b", "1.0")]),
        "b": ("1.0", [("a", "1.0")]),
    }
    installer, host, backend = _setup(context, packages, installed=["a"])
    installer.install("a", upgrade=True)
    assert backend.checkouts == ["a", "b"]
    assert host.install_calls == ["b", "a"]

    installer, host, backend = _setup(context, packages, installed=["b"])
    installer.install("a")
    assert host.install_calls == ["a"]


def test_refresh_failure_does_not_abort(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [])})
    host.fail_refresh = True
    installer.install("a")
    assert host.install_calls == ["a"]


def test_missing_recipe_aborts_chain(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [("ghost", "1.0")])})
    (context.recipes_dir / "recipes" / "ghost").unlink(missing_ok=True)
    with pytest.raises(RecipeNotFound):
        installer.install("a")
    assert host.install_calls == []


def test_literal_recipe_and_cache(context, db):
    installer, host, backend = _setup(context, {"foo": ("2.0", [])}, db=db)
    (context.recipes_dir / "recipes" / "foo").unlink()
    installer.install('(foo :fetcher git :url "https://example/foo.git")')
    assert host.install_calls == ["foo"]
    assert installer.cache.get("foo").url == "https://example/foo.git"


def test_build_only_does_not_touch_host(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [("b", "1.0")])})
    path = installer.build_only("a")
    assert path.name == "a-1.0.el"
    assert host.install_calls == [] and host.refreshed == []
    assert list(read_index(context.archive_dir / "archive-contents").entries) == ["a"]


def test_upgrade_rebuilds_installed_package(context, db):
    installer, host, backend = _setup(context, {"a": ("1.0", [("b", "1.0")]), "b": ("1.0", [])}, db=db)
    installer.install("a")
    backend.packages["a"] = ("1.1", [("b", "1.0")])
    installer.upgrade("a")
    assert backend.checkouts == ["a", "b", "a"]
    assert host.install_calls == ["b", "a", "a"]
    assert read_index(context.archive_dir / "archive-contents").get("a").version == (1, 1)

    assert installer.upgrade_all() == ["a", "b"]
    assert host.install_calls[-2:] == ["a", "b"]


def test_recipe_object_reference(context):
    installer, host, backend = _setup(context, {"a": ("1.0", [])})
    installer.install(Recipe.parse('(a :fetcher git :url "u")'))
    assert host.install_calls == ["a"]


def test_real_host_installs_when_refresh_keeps_failing(context, db):
    recipes = context.recipes_dir / "recipes"
    recipes.mkdir(parents=True)
    for name in ("a", "b"):
        (recipes / name).write_text(f'({name} :fetcher git :url "https://example/{name}.git")', encoding="utf-8")
    host = HostPackageManager(context, db)
    host.register_archive_source(context.archive_name, context.archive_dir)
    # the cache directory cannot be created, so every refresh fails
    (context.state_dir / "archives").mkdir(parents=True)
    (context.state_dir / "archives" / context.archive_name).write_text("not a directory")
    backend = FakeBackend({"a": ("1.0", [("b", "1.0")]), "b": ("1.0", [])})
    installer = Installer(context, host, RecipeResolver(RecipeRepository(context.recipes_dir)),
                          BuildOrchestrator(context, backend))
    installer.install("a")
    assert host.installed() == [("a", "1.0"), ("b", "1.0")]
    assert (context.package_dir / "a-1.0" / "a.el").is_file()
