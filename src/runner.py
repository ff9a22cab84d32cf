import sys
from dataclasses import dataclass, field
from pathlib import Path

from console_watch import ConsoleErrorCollector
from db_checks import Database, DatabasePool, run_db_checks
from net_rules import NetworkRuleMatcher
from page_actions import open_session
from replay_artifacts import ArtifactWriter
from replay_config import RunConfig, wants_mobile
from replay_context import AnchorStore, build_context, substitute
from replay_errors import ConfigurationError, ReplayAssertionError
from replay_spec import load_spec
from replay_steps import MonotonicIdSource, StepRunner


@dataclass
class ReplaySession:
    """Everything shared by a root spec and all of its prerequisites."""

    config: RunConfig
    actions: object
    anchors: AnchorStore
    pool: DatabasePool
    artifacts: ArtifactWriter
    id_source: MonotonicIdSource | None = None
    executed: list[Path] = field(default_factory=list)

    def log(self, msg: str) -> None:
        if self.config.verbose:
            print(msg, file=sys.stderr)


async def run_spec(path, session: ReplaySession, chain: tuple = ()) -> None:
    """Load one spec, satisfy its prerequisites, then run and verify it.

    ``chain`` holds the specs currently executing above this one. A spec that
    shows up in its own chain is a cycle; a spec shared by sibling chains
    simply runs again.
    """
    spec = load_spec(path)
    if spec.path in chain:
        cycle = " -> ".join(str(p) for p in (*chain, spec.path))
        raise ConfigurationError(f"Prerequisite cycle detected: {cycle}")

    for pre in spec.prerequisite_paths():
        session.log(f"🔗 Prerequisite {pre.name} for {spec.path.name}")
        await run_spec(pre, session, (*chain, spec.path))

    actions = session.actions
    anchors = session.anchors

    def ctx_getter() -> dict:
        return build_context(spec, anchors)

    console = ConsoleErrorCollector()
    matcher = NetworkRuleMatcher(spec.must_rules(), anchors, ctx_getter, verbose=session.config.verbose)
    detach_console = actions.on_console(console)
    detach_net = actions.on_response(matcher.observe)
    try:
        if spec.needs_default_navigation():
            base_url = substitute(spec.base_url, ctx_getter())
            session.log(f"→ Default navigation to {base_url}")
            await actions.goto(base_url)

        runner = StepRunner(spec, anchors, actions, session.pool, session.artifacts, session.config, session.id_source)
        await runner.run_all()

        await actions.drain()
        matcher.verify()

        if console.errors:
            raise ReplayAssertionError("Console has errors: " + "\n".join(console.errors))

        await run_db_checks(
            spec, anchors, session.pool, session.artifacts,
            environ=session.config.environ, verbose=session.config.verbose,
        )
    finally:
        detach_net()
        detach_console()

    session.executed.append(spec.path)
    session.log(f"✓ Spec completed: {spec.path.name}")


async def run_replay(config: RunConfig, open_browser=open_session, db_factory=Database) -> dict:
    """Run the root spec end to end and return the success report.

    Any failure captures page diagnostics before propagating; the browser and
    database connections are released on every path.
    """
    root = load_spec(config.spec_path)
    anchors = AnchorStore(root.anchors)
    artifacts = ArtifactWriter(config.artifacts_dir, verbose=config.verbose)
    pool = DatabasePool(db_factory)
    mobile = wants_mobile(root, config)

    try:
        async with open_browser(headless=config.headless, mobile=mobile, verbose=config.verbose) as actions:
            session = ReplaySession(config=config, actions=actions, anchors=anchors, pool=pool, artifacts=artifacts)
            try:
                await run_spec(root.path, session)
            except Exception:
                await artifacts.capture_page(actions, "replay-failed")
                raise
    finally:
        pool.close()

    return {"ok": True, "anchors": anchors.as_dict()}
