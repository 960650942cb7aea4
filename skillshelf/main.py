"""Command-line entry point for Skillshelf."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from skillshelf.config import Config, set_config
from skillshelf.exceptions import SkillShelfError
from skillshelf.logging import configure_logging, log
from skillshelf.manager import SkillManager
from skillshelf.registry import SkillRecord
from skillshelf.store import KeyValueStore, set_store

T = TypeVar("T")

cli = typer.Typer(help="Skillshelf - install and manage agent skill packages")
console = Console()


def _setup(config_path: str, verbose: bool) -> Config:
    cfg = Config.from_yaml(config_path or None)
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


async def _with_manager(cfg: Config, work: Callable[[SkillManager], Awaitable[T]]) -> T:
    store = KeyValueStore(cfg.store.path)
    set_store(store)
    manager = SkillManager(config=cfg, store=store)
    try:
        return await work(manager)
    finally:
        await manager.close()
        await store.close()


def _run(config_path: str, verbose: bool, work: Callable[[SkillManager], Awaitable[T]]) -> T:
    cfg = _setup(config_path, verbose)
    return asyncio.run(_with_manager(cfg, work))


def _print_skills(skills: list[SkillRecord]) -> None:
    if not skills:
        console.print("No skills installed.")
        return
    table = Table(title="Skills")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Flags")
    table.add_column("Description", overflow="fold")
    for skill in skills:
        flags = [flag for flag, on in (("built-in", skill.is_built_in), ("official", skill.is_official)) if on]
        table.add_row(
            skill.id,
            skill.name,
            "yes" if skill.enabled else "no",
            ", ".join(flags),
            skill.description,
        )
    console.print(table)


def _print_failure(result: dict[str, Any]) -> NoReturn:
    console.print(f"[red]Error:[/red] {result.get('error') or 'Unknown error'}")
    raise typer.Exit(code=1)


ConfigOption = typer.Option("", "-c", "--config", help="Path to config file")
VerboseOption = typer.Option(False, "-v", "--verbose", help="Debug logging")


@cli.command("list")
def list_command(config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """List every discovered skill."""
    skills = _run(config, verbose, lambda manager: manager.list_skills())
    _print_skills(skills)


def _set_enabled(skill_id: str, enabled: bool, config: str, verbose: bool) -> None:
    try:
        skills = _run(config, verbose, lambda manager: manager.set_skill_enabled(skill_id, enabled))
    except SkillShelfError as e:
        _print_failure({"error": str(e)})
    _print_skills(skills)


@cli.command()
def enable(skill_id: str, config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Enable a skill."""
    _set_enabled(skill_id, True, config, verbose)


@cli.command()
def disable(skill_id: str, config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Disable a skill."""
    _set_enabled(skill_id, False, config, verbose)


@cli.command()
def delete(skill_id: str, config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Delete a user-installed skill."""
    try:
        skills = _run(config, verbose, lambda manager: manager.delete_skill(skill_id))
    except SkillShelfError as e:
        _print_failure({"error": str(e)})
    console.print(f"[green]OK:[/green] Deleted {skill_id}")
    _print_skills(skills)


@cli.command()
def add(source: str, config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Install skills from a local path, archive, git URL or GitHub shorthand."""
    result = _run(config, verbose, lambda manager: manager.download_skill(source))
    if not result.get("success"):
        _print_failure(result)
    console.print(f"[green]OK:[/green] Installed from {source}")


@cli.command("config-get")
def config_get(skill_id: str, config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Show a skill's .env configuration."""
    result = _run(config, verbose, lambda manager: manager.get_skill_config(skill_id))
    if not result.get("success"):
        _print_failure(result)
    values = result.get("config") or {}
    if not values:
        console.print("No configuration.")
        return
    for key, value in values.items():
        console.print(f"{key}={value}")


@cli.command("config-set")
def config_set(
    skill_id: str,
    pairs: list[str] = typer.Argument(..., help="KEY=VALUE entries"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Merge KEY=VALUE entries into a skill's .env configuration."""
    updates: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            _print_failure({"error": f"Invalid entry: {pair}"})
        updates[key.strip()] = value

    async def _merge(manager: SkillManager) -> dict[str, Any]:
        current = await manager.get_skill_config(skill_id)
        if not current.get("success"):
            return current
        return await manager.set_skill_config(skill_id, {**current["config"], **updates})

    result = _run(config, verbose, _merge)
    if not result.get("success"):
        _print_failure(result)
    console.print(f"[green]OK:[/green] Updated {skill_id}")


@cli.command()
def test(
    skill_id: str,
    name: str = typer.Option("email", "-n", "--name", help="Connectivity test name"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Run a connectivity test with the skill's saved configuration."""

    async def _run_check(manager: SkillManager) -> dict[str, Any]:
        current = await manager.get_skill_config(skill_id)
        if not current.get("success"):
            return current
        return await manager.test_connectivity(skill_id, name, current["config"])

    result = _run(config, verbose, _run_check)
    if not result.get("success"):
        _print_failure(result)
    report = result["result"]
    for check in report["checks"]:
        colour = "green" if check["level"] == "pass" else "red"
        console.print(f"[{colour}]{check['level'].upper()}[/{colour}] {check['code']}: {check['message']}")
    if report["verdict"] != "pass":
        raise typer.Exit(code=1)


@cli.command()
def prompt(config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Print the auto-routing prompt for enabled skills."""
    text = _run(config, verbose, lambda manager: manager.build_auto_routing_prompt())
    console.print(text or "No enabled skills.", markup=False)


@cli.command()
def root(config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Print the managed skills directory."""

    async def _root(manager: SkillManager) -> str:
        return str(manager.ensure_skills_root())

    console.print(_run(config, verbose, _root), markup=False)


@cli.command()
def watch(config: str = ConfigOption, verbose: bool = VerboseOption) -> None:
    """Watch the skill roots and print the inventory whenever it changes."""

    async def _watch(manager: SkillManager) -> None:
        changes: asyncio.Queue[None] = asyncio.Queue()
        manager.subscribe(lambda: changes.put_nowait(None))
        manager.sync_bundled_skills()
        manager.start_watching()
        console.print(f"Watching {len(manager.watcher.watched_paths)} paths. Ctrl-C to stop.")
        while True:
            await changes.get()
            _print_skills(await manager.list_skills())

    try:
        _run(config, verbose, _watch)
    except KeyboardInterrupt:
        log.info("Interrupted by user")


@cli.command()
def version() -> None:
    """Show version information."""
    from skillshelf import __version__

    print(f"Skillshelf v{__version__}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
