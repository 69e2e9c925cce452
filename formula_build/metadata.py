# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import getpass
import os
from dataclasses import asdict, dataclass, field
from os.path import abspath, basename, dirname, isdir, isfile, join
from typing import TYPE_CHECKING

import jinja2
import yaml
from bs4 import UnicodeDammit

from .environ import EnvEntry, EnvOverlay
from .exceptions import RecipeError
from .platform import Platform, eval_selector
from .steps import parse_steps, step_to_dict
from .utils import ensure_list, get_logger

if TYPE_CHECKING:
    from typing import Any

    from .config import Config
    from .steps import Step

log = get_logger(__name__)

VALID_RECIPES = ("formula.yaml", "formula.yml", "meta.yaml", "meta.yml")

FIELDS = {
    "package": {"name", "version", "revision"},
    "about": {"desc", "homepage", "license"},
    "source": {"url", "sha256", "fn"},
    "livecheck": {"url", "regex"},
    "bottles": None,
    "requirements": {"build", "run"},
    "resources": None,
    "patches": None,
    "build": {"steps", "env"},
    "relocate": None,
    "caveats": None,
    "test": {
        "binary",
        "introspect",
        "dirs",
        "config_file",
        "config",
        "serve",
        "exchange",
        "ready_timeout",
        "grace_period",
    },
}


@dataclass(frozen=True)
class Source:
    url: str
    sha256: str | None = None
    fn: str | None = None


@dataclass(frozen=True)
class Resource:
    name: str
    url: str
    sha256: str | None = None
    steps: tuple[Step, ...] = ()
    env: EnvOverlay = field(default_factory=EnvOverlay)
    when: str | None = None


@dataclass(frozen=True)
class Patch:
    url: str
    sha256: str | None = None
    level: int | None = None
    when: str | None = None

    @property
    def name(self):
        return basename(self.url.split("?")[0].rstrip("/")) or self.url


@dataclass(frozen=True)
class Relocation:
    directory: str
    name: str
    new_name: str
    when: str | None = None

    @property
    def relpath(self):
        return f"{self.directory}/{self.name}"


@dataclass(frozen=True)
class Exchange:
    """Bytes stored under the test directory and read back through a client."""

    store: str
    content: bytes
    remote: str
    share: str = ""
    client: str = "smbclient"
    host: str = "127.0.0.1"


@dataclass(frozen=True)
class AcceptanceTest:
    binary: str
    exchange: Exchange
    introspect: tuple[tuple[str, ...], ...] = ()
    dirs: tuple[str, ...] = ()
    config_file: str = "server.conf"
    config: str = ""
    serve: tuple[str, ...] = ()
    ready_timeout: float | None = None
    grace_period: float | None = None


@dataclass(frozen=True)
class Livecheck:
    url: str
    regex: str


@dataclass(frozen=True)
class Caveats:
    text: str
    when: str | None = None


@dataclass(frozen=True)
class Recipe:
    name: str
    version: str
    revision: int = 0
    license: str | None = None
    desc: str | None = None
    homepage: str | None = None
    source: Source | None = None
    resources: tuple[Resource, ...] = ()
    patches: tuple[Patch, ...] = ()
    steps: tuple[Step, ...] = ()
    env: tuple[EnvEntry, ...] = ()
    relocations: tuple[Relocation, ...] = ()
    test: AcceptanceTest | None = None
    build_requirements: tuple[str, ...] = ()
    run_requirements: tuple[str, ...] = ()
    bottles: tuple[tuple[str, str], ...] = ()
    livecheck: Livecheck | None = None
    caveats: tuple[Caveats, ...] = ()
    path: str | None = None

    @property
    def pkg_version(self):
        if self.revision:
            return f"{self.version}_{self.revision}"
        return self.version

    def dist(self):
        return f"{self.name}-{self.pkg_version}"

    def active_relocations(self, platform: Platform) -> list[Relocation]:
        return [r for r in self.relocations if eval_selector(r.when, platform)]

    def installed_path(self, prefix, relpath, platform: Platform):
        """Where ``relpath`` ends up under ``prefix`` once relocation ran."""
        relpath = relpath.strip("/")
        for relocation in self.active_relocations(platform):
            if relocation.relpath == relpath:
                return join(prefix, relocation.directory, relocation.new_name)
        return join(prefix, relpath)

    def bottle_checksum(self, platform: Platform) -> str | None:
        return dict(self.bottles).get(platform.bottle_tag)

    def caveats_for(self, platform: Platform) -> str:
        return "\n".join(
            c.text.rstrip() for c in self.caveats if eval_selector(c.when, platform)
        )

    def to_dict(self, platform: Platform | None = None) -> dict[str, Any]:
        d: dict[str, Any] = {
            "package": {
                "name": self.name,
                "version": self.version,
                "revision": self.revision,
            },
            "about": {
                k: v
                for k, v in (
                    ("desc", self.desc),
                    ("homepage", self.homepage),
                    ("license", self.license),
                )
                if v
            },
        }
        if self.source:
            d["source"] = _plain(asdict(self.source))
        if self.livecheck:
            d["livecheck"] = _plain(asdict(self.livecheck))
        if self.bottles:
            d["bottles"] = dict(self.bottles)
        if self.build_requirements or self.run_requirements:
            d["requirements"] = {
                "build": list(self.build_requirements),
                "run": list(self.run_requirements),
            }
        if self.resources:
            d["resources"] = [
                _plain(
                    {
                        "name": r.name,
                        "url": r.url,
                        "sha256": r.sha256,
                        "when": r.when,
                        "env": r.env.to_dict(),
                        "steps": [step_to_dict(s) for s in r.steps],
                    }
                )
                for r in self.resources
            ]
        if self.patches:
            d["patches"] = [_plain(asdict(p)) for p in self.patches]
        d["build"] = {
            "steps": [step_to_dict(s) for s in self.steps],
            "env": [_plain({"when": e.when, **e.overlay.to_dict()}) for e in self.env],
        }
        if self.relocations:
            d["relocate"] = [_plain(asdict(r)) for r in self.relocations]
        if self.caveats:
            d["caveats"] = [_plain(asdict(c)) for c in self.caveats]
        if self.test:
            d["test"] = _plain(asdict(self.test))
        if platform is not None:
            d["platform"] = {
                "subdir": platform.subdir,
                "bottle_tag": platform.bottle_tag,
                "bottle_sha256": self.bottle_checksum(platform),
                "relocations": [r.relpath for r in self.active_relocations(platform)],
                "caveats": self.caveats_for(platform) or None,
            }
        return d


def _plain(value):
    """Make dataclass dumps safe for ``yaml.safe_dump``."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items() if v not in (None, (), [], {})}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def find_recipe(path):
    """recurse through a folder, locating valid recipe files.  If the path is a
    file, return it as-is."""
    if isfile(path):
        if basename(path) in VALID_RECIPES or path.endswith((".yaml", ".yml")):
            return abspath(path)
        raise RecipeError(f"{path} is not a valid recipe file")
    if isdir(path):
        for name in VALID_RECIPES:
            candidate = join(path, name)
            if isfile(candidate):
                return abspath(candidate)
    raise RecipeError(
        "No recipe file ({}) found in {}".format(", ".join(VALID_RECIPES), path)
    )


def _section(meta, name, kind=dict):
    value = meta.get(name)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise RecipeError(
            f"Section '{name}' must be a {kind.__name__}, got {type(value).__name__}"
        )
    expected = FIELDS.get(name)
    if expected and kind is dict:
        unknown = set(value) - expected
        if unknown:
            raise RecipeError(
                "Unknown keys in section '{}': {}".format(name, ", ".join(sorted(unknown)))
            )
    return value


def _require(data, key, where):
    value = data.get(key)
    if value in (None, ""):
        raise RecipeError(f"Missing required key '{key}' in {where}")
    return value


def _number(data, key, where, cast=float):
    value = data.get(key)
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise RecipeError(f"{where}/{key} must be a number, got {value!r}")


def _overlay(data, where):
    try:
        return EnvOverlay.from_dict(data)
    except ValueError as e:
        raise RecipeError(f"{where}: {e}")


def _parse_relocations(entries):
    relocations = []
    for entry in ensure_list(entries, include_dict=False):
        if not isinstance(entry, dict):
            raise RecipeError(f"relocate entries must be mappings, got {entry!r}")
        when = entry.get("when")
        if "files" in entry:
            prefix = _require(entry, "prefix", "relocate")
            for relpath in ensure_list(entry["files"]):
                directory, _, name = str(relpath).strip("/").rpartition("/")
                if not directory:
                    raise RecipeError(f"relocate file {relpath!r} needs a directory")
                relocations.append(Relocation(directory, name, prefix + name, when))
        else:
            relocations.append(
                Relocation(
                    str(_require(entry, "dir", "relocate")),
                    str(_require(entry, "name", "relocate")),
                    str(_require(entry, "to", "relocate")),
                    when,
                )
            )
    return tuple(relocations)


def _parse_test(data):
    if not data:
        return None
    exchange = _require(data, "exchange", "test")
    if not isinstance(exchange, dict):
        raise RecipeError("test/exchange must be a mapping")
    content = _require(exchange, "content", "test/exchange")
    exchange = Exchange(
        store=str(_require(exchange, "store", "test/exchange")),
        content=content.encode("utf-8") if isinstance(content, str) else bytes(content),
        remote=str(_require(exchange, "remote", "test/exchange")),
        share=str(exchange.get("share", "")),
        client=str(exchange.get("client", "smbclient")),
        host=str(exchange.get("host", "127.0.0.1")),
    )
    return AcceptanceTest(
        binary=str(_require(data, "binary", "test")),
        exchange=exchange,
        introspect=tuple(
            tuple(str(a) for a in ensure_list(args))
            for args in ensure_list(data.get("introspect"), include_dict=False)
        ),
        dirs=tuple(str(d) for d in ensure_list(data.get("dirs"))),
        config_file=str(data.get("config_file", "server.conf")),
        config=str(data.get("config", "")),
        serve=tuple(str(a) for a in ensure_list(data.get("serve"))),
        ready_timeout=_number(data, "ready_timeout", "test"),
        grace_period=_number(data, "grace_period", "test"),
    )


def recipe_from_dict(meta, path=None) -> Recipe:
    """Validate a loaded recipe mapping and turn it into a :class:`Recipe`."""
    if not isinstance(meta, dict):
        raise RecipeError("A recipe must be a mapping at the top level")
    unknown = set(meta) - set(FIELDS)
    if unknown:
        raise RecipeError(
            "Unknown top-level recipe sections: {}".format(", ".join(sorted(unknown)))
        )
    package = _section(meta, "package")
    about = _section(meta, "about")
    source = _section(meta, "source")
    build = _section(meta, "build")
    requirements = _section(meta, "requirements")
    livecheck = _section(meta, "livecheck")

    try:
        revision = int(package.get("revision") or 0)
    except (TypeError, ValueError):
        raise RecipeError(f"revision must be an integer, got {package.get('revision')!r}")

    resources = []
    for entry in _section(meta, "resources", list):
        if not isinstance(entry, dict):
            raise RecipeError(f"resources entries must be mappings, got {entry!r}")
        resources.append(
            Resource(
                name=str(_require(entry, "name", "resources")),
                url=str(_require(entry, "url", "resources")),
                sha256=entry.get("sha256"),
                steps=parse_steps(entry.get("steps")),
                env=_overlay(entry.get("env"), f"resource {entry.get('name')}"),
                when=entry.get("when"),
            )
        )

    patches = []
    for entry in _section(meta, "patches", list):
        if isinstance(entry, str):
            entry = {"url": entry}
        elif not isinstance(entry, dict):
            raise RecipeError(f"patches entries must be strings or mappings, got {entry!r}")
        patches.append(
            Patch(
                url=str(_require(entry, "url", "patches")),
                sha256=entry.get("sha256"),
                level=_number(entry, "level", "patches", int),
                when=entry.get("when"),
            )
        )

    env_entries = []
    for entry in ensure_list(build.get("env"), include_dict=False):
        if not isinstance(entry, dict):
            raise RecipeError(f"build/env entries must be mappings, got {entry!r}")
        env_entries.append(
            EnvEntry(overlay=_overlay(entry, "build/env"), when=entry.get("when"))
        )

    caveats = []
    for entry in ensure_list(meta.get("caveats"), include_dict=False):
        if isinstance(entry, str):
            entry = {"text": entry}
        elif not isinstance(entry, dict):
            raise RecipeError(f"caveats entries must be strings or mappings, got {entry!r}")
        caveats.append(Caveats(text=str(_require(entry, "text", "caveats")), when=entry.get("when")))

    return Recipe(
        name=str(_require(package, "name", "package")),
        version=str(_require(package, "version", "package")),
        revision=revision,
        license=about.get("license"),
        desc=about.get("desc"),
        homepage=about.get("homepage"),
        source=Source(
            url=str(_require(source, "url", "source")),
            sha256=source.get("sha256"),
            fn=source.get("fn"),
        )
        if source
        else None,
        resources=tuple(resources),
        patches=tuple(patches),
        steps=parse_steps(build.get("steps")),
        env=tuple(env_entries),
        relocations=_parse_relocations(meta.get("relocate")),
        test=_parse_test(_section(meta, "test")),
        build_requirements=tuple(str(r) for r in ensure_list(requirements.get("build"))),
        run_requirements=tuple(str(r) for r in ensure_list(requirements.get("run"))),
        bottles=tuple(
            (str(k), str(v)) for k, v in _section(meta, "bottles").items()
        ),
        livecheck=Livecheck(
            url=str(_require(livecheck, "url", "livecheck")),
            regex=str(_require(livecheck, "regex", "livecheck")),
        )
        if livecheck
        else None,
        caveats=tuple(caveats),
        path=path,
    )


def read_recipe_file(recipe_path):
    with open(recipe_path, "rb") as f:
        recipe_text = UnicodeDammit(f.read()).unicode_markup
    if hasattr(recipe_text, "decode"):
        recipe_text = recipe_text.decode()
    return recipe_text


def _render_text(text, recipe_dir, context, strict):
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(recipe_dir),
        undefined=jinja2.StrictUndefined if strict else jinja2.Undefined,
        keep_trailing_newline=True,
    )
    try:
        rendered = env.from_string(text).render(**context)
    except jinja2.TemplateError as e:
        raise RecipeError(f"Failed to render recipe template: {e}")
    try:
        return yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise RecipeError(f"Unable to parse recipe file:\n{e}")


def get_context(config: Config, platform: Platform, prefix=None, **extra):
    prefix = prefix or ""
    context = dict(platform.namespace())
    context.update(
        dict(
            platform=platform,
            environ=os.environ,
            user=getpass.getuser(),
            prefix=prefix,
            bin=join(prefix, "bin") if prefix else "",
            sbin=join(prefix, "sbin") if prefix else "",
            lib=join(prefix, "lib") if prefix else "",
            build_prefix=config.build_prefix if config.build_id else "",
            src_dir=config.work_dir if config.build_id else "",
        )
    )
    context.update(extra)
    return context


def render_recipe(recipe_path, config: Config, platform: Platform | None = None) -> Recipe:
    """Render a recipe file with Jinja2 and load it.

    The first pass only needs the package name and version; they fix the
    build id and install prefix on ``config``, which the second, strict pass
    can then refer to as ``{{ prefix }}``, ``{{ build_prefix }}`` and so on.
    """
    platform = platform or config.host_platform or Platform.current()
    path = find_recipe(recipe_path)
    recipe_dir = dirname(path)
    text = read_recipe_file(path)

    first = _render_text(text, recipe_dir, get_context(config, platform), strict=False)
    if not isinstance(first, dict):
        raise RecipeError(f"{path} does not contain a recipe mapping")
    package = _section(first, "package")
    name = str(_require(package, "name", "package"))
    version = str(_require(package, "version", "package"))
    pkg_version = version
    if package.get("revision"):
        pkg_version = "{}_{}".format(pkg_version, package["revision"])
    config.compute_build_id(name, pkg_version)

    meta = _render_text(
        text,
        recipe_dir,
        get_context(
            config,
            platform,
            prefix=config.prefix,
            name=name,
            version=version,
        ),
        strict=True,
    )
    recipe = recipe_from_dict(meta, recipe_dir)
    log.debug("Rendered recipe %s for %s", recipe.dist(), platform)
    return recipe
