# elquest/recipes.py
"""
recipes.py - build recipes and the recipe repository

- Recipe: immutable description of where a package's source lives and
  which files make up the package
- RecipeRepository: a git checkout holding one recipe file per package
  under recipes/ (MELPA layout), cloned or updated on demand
- RecipeResolver: turns a package reference (bare name or recipe literal)
  into a Recipe
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from elquest import sexp
from elquest.errors import BuildBackendError, RecipeNotFound
from elquest.logging import get_logger
from elquest.process import safe_run
from elquest.sexp import Symbol

logger = get_logger("recipes")

FETCHERS = ("git", "github", "gitlab", "file")
_KNOWN_KEYS = (":fetcher", ":url", ":repo", ":branch", ":commit", ":files", ":version-regexp")

# ----------------------------
# Recipe
# ----------------------------
@dataclass(frozen=True)
class Recipe:
    name: str
    fetcher: str
    url: Optional[str] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    commit: Optional[str] = None
    files: Optional[Tuple[Any, ...]] = field(default=None, hash=False)
    version_regexp: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def source_url(self) -> str:
        if self.url:
            return self.url
        if self.fetcher == "github" and self.repo:
            return f"https://github.com/{self.repo}.git"
        if self.fetcher == "gitlab" and self.repo:
            return f"https://gitlab.com/{self.repo}.git"
        raise BuildBackendError(f"recipe for {self.name} has no :url or :repo")

    @classmethod
    def from_sexp(cls, value: Any) -> "Recipe":
        if not isinstance(value, list) or not value or not isinstance(value[0], Symbol):
            raise ValueError(f"recipe must be a list starting with the package name, got {value!r}")
        name = str(value[0])
        try:
            props = sexp.plist_to_dict(value[1:])
        except sexp.SexpError as e:
            raise ValueError(f"recipe for {name}: {e}") from e
        fetcher = props.get(Symbol(":fetcher"))
        if fetcher is None:
            raise ValueError(f"recipe for {name} has no :fetcher")
        fetcher = str(fetcher)
        if fetcher not in FETCHERS:
            raise ValueError(f"recipe for {name}: unsupported fetcher '{fetcher}'")

        def _str(key: str) -> Optional[str]:
            v = props.get(Symbol(key))
            if v is None or v == []:
                return None
            if not isinstance(v, str):
                raise ValueError(f"recipe for {name}: {key} must be a string")
            return str(v)

        files = props.get(Symbol(":files"))
        if files is not None and not isinstance(files, list):
            raise ValueError(f"recipe for {name}: :files must be a list")
        if fetcher in ("github", "gitlab") and not (_str(":repo") or _str(":url")):
            raise ValueError(f"recipe for {name}: fetcher {fetcher} needs :repo")
        if fetcher in ("git", "file") and not _str(":url"):
            raise ValueError(f"recipe for {name}: fetcher {fetcher} needs :url")
        return cls(
            name=name,
            fetcher=fetcher,
            url=_str(":url"),
            repo=_str(":repo"),
            branch=_str(":branch"),
            commit=_str(":commit"),
            files=tuple(files) if files else None,
            version_regexp=_str(":version-regexp"),
            extras={k: v for k, v in props.items() if k not in _KNOWN_KEYS},
        )

    @classmethod
    def parse(cls, text: str) -> "Recipe":
        try:
            return cls.from_sexp(sexp.read_first(text))
        except sexp.SexpError as e:
            raise ValueError(f"cannot read recipe: {e}") from e

    def to_sexp(self) -> List[Any]:
        out: List[Any] = [Symbol(self.name), Symbol(":fetcher"), Symbol(self.fetcher)]
        for key, val in ((":url", self.url), (":repo", self.repo), (":branch", self.branch),
                         (":commit", self.commit), (":version-regexp", self.version_regexp)):
            if val is not None:
                out.extend([Symbol(key), val])
        if self.files is not None:
            out.extend([Symbol(":files"), list(self.files)])
        for key, val in self.extras.items():
            out.extend([Symbol(key), val])
        return out

    def dumps(self) -> str:
        return sexp.dumps(self.to_sexp())


RecipeRef = Union[str, Recipe, List[Any]]


def parse_ref(text: str) -> RecipeRef:
    """Command-line argument -> bare package name or Recipe."""
    text = text.strip()
    if text.startswith("("):
        return Recipe.parse(text)
    return text

# ----------------------------
# Recipe repository (git checkout)
# ----------------------------
class RecipeRepository:
    def __init__(self, root: Union[str, Path], remote: Optional[str] = None, branch: str = "master", timeout: int = 600):
        self.root = Path(root)
        self.remote = remote
        self.branch = branch
        self.timeout = timeout

    @property
    def recipes_dir(self) -> Path:
        return self.root / "recipes"

    def is_checked_out(self) -> bool:
        return self.recipes_dir.is_dir()

    def ensure_checkout(self, update: bool = True) -> Path:
        """Clone the repository, or pull it when `update` is set."""
        if (self.root / ".git").exists():
            if not update:
                return self.root
            logger.info("updating recipe repository %s", self.root)
            rc, _, err = safe_run(["git", "fetch", "--depth", "1", "origin", self.branch], cwd=self.root, timeout=self.timeout)
            if rc == 0:
                rc, _, err = safe_run(["git", "reset", "--hard", f"origin/{self.branch}"], cwd=self.root, timeout=self.timeout)
            if rc != 0:
                logger.warning("recipe repository update failed, using existing checkout: %s", err.strip())
            return self.root
        if self.is_checked_out():
            # plain directory of recipes, nothing to update
            return self.root
        if not self.remote:
            raise BuildBackendError(f"no recipe repository at {self.root} and no remote configured")
        logger.info("cloning recipe repository %s into %s", self.remote, self.root)
        self.root.parent.mkdir(parents=True, exist_ok=True)
        rc, _, err = safe_run(["git", "clone", "--depth", "1", "--branch", self.branch, self.remote, str(self.root)], timeout=self.timeout)
        if rc != 0:
            raise BuildBackendError(f"git clone of {self.remote} failed: {err.strip()}")
        return self.root

    def lookup(self, name: str) -> Recipe:
        path = self.recipes_dir / name
        if not path.is_file():
            raise RecipeNotFound(name)
        recipe = Recipe.parse(path.read_text(encoding="utf-8"))
        if recipe.name != name:
            logger.warning("recipe file %s names package '%s'", path, recipe.name)
        return recipe

    def names(self) -> List[str]:
        if not self.recipes_dir.is_dir():
            return []
        return sorted(p.name for p in self.recipes_dir.iterdir() if p.is_file() and not p.name.startswith("."))

# ----------------------------
# Resolver
# ----------------------------
class RecipeResolver:
    def __init__(self, repository: RecipeRepository):
        self.repository = repository

    def resolve(self, ref: RecipeRef) -> Recipe:
        if isinstance(ref, Recipe):
            return ref
        if isinstance(ref, list):
            return Recipe.from_sexp(ref)
        if isinstance(ref, str) and ref.lstrip().startswith("("):
            return Recipe.parse(ref)
        return self.repository.lookup(str(ref))

    @staticmethod
    def package_name(ref: RecipeRef) -> str:
        if isinstance(ref, Recipe):
            return ref.name
        if isinstance(ref, list):
            if not ref:
                raise ValueError("empty recipe")
            return str(ref[0])
        if isinstance(ref, str) and ref.lstrip().startswith("("):
            return Recipe.parse(ref).name
        return str(ref)

# ----------------------------
# Recipe cache (state DB)
# ----------------------------
class RecipeCache:
    """Last recipe used to build each package, kept in the `recipe_cache` table."""

    def __init__(self, db):
        self.db = db

    def remember(self, recipe: Recipe) -> None:
        self.db.execute(
            "INSERT INTO recipe_cache (name, recipe, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET recipe=excluded.recipe, updated_at=excluded.updated_at;",
            (recipe.name, recipe.dumps(), int(time.time())),
            commit=True,
        )

    def get(self, name: str) -> Optional[Recipe]:
        row = self.db.fetchone("SELECT recipe FROM recipe_cache WHERE name = ?;", (name,))
        if row is None:
            return None
        try:
            return Recipe.parse(row["recipe"])
        except ValueError as e:
            logger.warning("discarding unreadable cached recipe for %s: %s", name, e)
            return None

    def all(self) -> List[Recipe]:
        out: List[Recipe] = []
        for row in self.db.fetchall("SELECT name FROM recipe_cache ORDER BY name;"):
            recipe = self.get(row["name"])
            if recipe is not None:
                out.append(recipe)
        return out

    def forget(self, name: str) -> None:
        self.db.execute("DELETE FROM recipe_cache WHERE name = ?;", (name,), commit=True)
