from pathlib import Path

from conftest import FakeBackend, FakeHost
from elquest import config
from elquest.bootstrap import Context, init, install_or_build, make_installer
from elquest.buildsystem import BuildOrchestrator
from elquest.host import HostPackageManager
from elquest.installer import Installer
from elquest.recipes import RecipeRepository, RecipeResolver


class CountingRepository(RecipeRepository):
    def __init__(self, root):
        super().__init__(root)
        self.checkouts = 0

    def ensure_checkout(self, update=True):
        self.checkouts += 1
        (self.root / "recipes").mkdir(parents=True, exist_ok=True)
        return self.root


def test_context_from_config(tmp_path):
    ctx = Context.from_config(config.get_config())
    assert ctx.archive_name == "elquest"
    assert ctx.archive_dir == tmp_path / "archive"
    assert ctx.package_dir == tmp_path / "elpa"
    assert ctx.update_recipes is False
    assert ctx.initialized is False


def test_init_is_idempotent(context):
    host = FakeHost()
    repo = CountingRepository(context.recipes_dir)
    init(context, host, repo)
    init(context, host, repo)
    assert context.initialized
    assert context.archive_dir.is_dir()
    assert host.registered == [("local", context.archive_dir)]
    assert repo.checkouts == 1

    # a checked-out repository is left alone when updates are off
    other = Context("x", context.archive_dir, context.build_dir, context.recipes_dir, update_recipes=False)
    init(other, host, repo)
    assert repo.checkouts == 1


def test_install_or_build(context):
    repo = CountingRepository(context.recipes_dir)
    repo.ensure_checkout()
    (context.recipes_dir / "recipes" / "a").write_text('(a :fetcher git :url "u")')
    host = FakeHost()
    installer = Installer(context, host, RecipeResolver(repo), BuildOrchestrator(context, FakeBackend({"a": ("1.0", [])})))
    install_or_build("a", context, installer)
    install_or_build("a", context, installer)
    assert host.install_calls == ["a"]


def test_make_installer_wires_real_components(context, db):
    installer = make_installer(context, db=db)
    assert isinstance(installer.host, HostPackageManager)
    assert isinstance(installer.resolver.repository, RecipeRepository)
    assert Path(installer.resolver.repository.root) == context.recipes_dir
