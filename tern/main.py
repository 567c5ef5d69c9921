"""tern entry point.

Initializes all components and runs the interactive REPL:
  Settings -> Provider -> Database -> EventBus -> PlanStore -> Tools -> AgentLoop

Approval requests from the loop are answered on stdin by a presenter task
that reads the gate's outbound queue.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from tern.agent.approval import ApprovalGate, ApprovalRequest
from tern.agent.loop import AgentLoop, TextChunk, ToolCallFinished, ToolCallStarted, TurnFinished
from tern.config import Settings
from tern.errors import PersistenceUnavailable, PlanError, TernError
from tern.events import PLAN_STATUS_CHANGED, Event, EventBus
from tern.plan.export import PlanExporter
from tern.plan.models import PlanStatus
from tern.plan.scheduler import PlanScheduler
from tern.plan.store import PlanStore
from tern.providers.factory import create_provider
from tern.storage.database import Database
from tern.storage.repository import EventRepository, PlanRepository, SessionRepository
from tern.tools.builtin import register_builtin_tools
from tern.tools.plan_tool import format_status, register_plan_tool
from tern.tools.registry import ToolRegistry
from tern.tools.web import register_web_tools

logger = logging.getLogger(__name__)

HELP = """Commands:
  /plan      toggle plan mode (read-only until a plan is approved)
  /status    show the current plan
  /approve   approve the pending plan, export PLAN.md and execute it
  /reject    reject the current plan
  /execute   run (or resume) the approved plan
  /clear     forget the conversation
  /quit      exit"""


async def create_components(
    settings: Settings,
    *,
    session_id: str | None = None,
    plan_mode: bool = False,
) -> dict:
    """Initialize all components in dependency order.

    A database that cannot be opened is not fatal: the session runs in
    memory with the JSON plan cache as its only persistence.
    """
    provider = create_provider(settings)

    database = None
    if settings.persistence_enabled:
        database = Database(settings)
        try:
            await database.connect()
        except PersistenceUnavailable as e:
            logger.warning("Running without persistence: %s", e)
            await database.disconnect()
            database = None

    sessions = plans_repo = events_repo = None
    if database is not None:
        sessions = SessionRepository(database)
        plans_repo = PlanRepository(database)
        events_repo = EventRepository(database)

    bus = EventBus()
    if events_repo is not None:
        bus.set_db_persister(events_repo.record)
    await bus.start()

    store = PlanStore(plans_repo, settings.plan_cache_dir)

    registry = ToolRegistry()
    register_builtin_tools(registry, settings)
    web_tool = register_web_tools(registry, settings)
    register_plan_tool(registry, store)
    registry.freeze()

    gate = ApprovalGate(timeout=settings.approval_timeout, events=bus)

    resumed = session_id is not None
    session_id = session_id or uuid4().hex
    if sessions is not None:
        try:
            if not resumed or await sessions.get(session_id) is None:
                await sessions.create(
                    session_id,
                    provider=provider.name,
                    model=settings.model or provider.default_model,
                    working_directory=settings.workspace_dir,
                )
        except PersistenceUnavailable as e:
            logger.warning("Session record not created: %s", e)

    loop = AgentLoop(
        provider,
        registry,
        settings,
        session_id=session_id,
        gate=gate,
        events=bus,
        plans=store,
        history=sessions,
        plan_mode=plan_mode,
    )
    if resumed:
        await loop.restore()

    return {
        "provider": provider,
        "database": database,
        "bus": bus,
        "store": store,
        "registry": registry,
        "web_tool": web_tool,
        "gate": gate,
        "loop": loop,
        "scheduler": PlanScheduler(loop, store, bus),
        "exporter": PlanExporter(Path(settings.workspace_dir)),
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down tern...")
    bus = components.get("bus")
    if bus:
        await bus.stop()

    web_tool = components.get("web_tool")
    if web_tool:
        await web_tool.close()

    provider = components.get("provider")
    if provider:
        await provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()
    logger.info("tern shutdown complete.")


# ---------------------------------------------------------------------------
# Terminal surface
# ---------------------------------------------------------------------------


def _describe_request(request: ApprovalRequest) -> str:
    capabilities = ", ".join(sorted(c.value for c in request.tool.capabilities)) or "none"
    arguments = json.dumps(request.arguments, indent=2, ensure_ascii=False)
    return f"\n[approval] {request.tool.name} ({capabilities})\n{arguments}"


async def present_approvals(gate: ApprovalGate) -> None:
    """Answer approval requests from stdin until cancelled."""
    while True:
        request = await gate.requests.get()
        print(_describe_request(request))
        answer = await asyncio.to_thread(input, "Allow? [y/N] ")
        approved = answer.strip().lower() in ("y", "yes")
        gate.resolve(request.request_id, approved, "" if approved else "user")


@contextmanager
def _on_interrupt(handler):
    """Route SIGINT to `handler` while the block runs, where the event loop allows it."""
    event_loop = asyncio.get_running_loop()
    try:
        event_loop.add_signal_handler(signal.SIGINT, handler)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported here; Ctrl-C will stop the process")
        yield
        return
    try:
        yield
    finally:
        event_loop.remove_signal_handler(signal.SIGINT)


async def run_prompt(loop: AgentLoop, text: str) -> None:
    """Run one turn. Ctrl-C cancels it cleanly; a second Ctrl-C aborts it."""
    task = asyncio.current_task()
    interrupts = 0

    def interrupt() -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            print("\n[cancelling, press Ctrl-C again to abort]", flush=True)
            loop.cancel()
        else:
            task.cancel()

    with _on_interrupt(interrupt):
        try:
            await _print_turn(loop, text)
        except asyncio.CancelledError:
            if interrupts < 2 or task.uncancel():
                raise
            print("\n[turn aborted]")


async def _print_turn(loop: AgentLoop, text: str) -> None:
    streamed = False
    async for event in loop.stream_turn(text):
        if isinstance(event, TextChunk):
            print(event.text, end="", flush=True)
            streamed = True
        elif isinstance(event, ToolCallStarted):
            print(f"\n-> {event.name}")
        elif isinstance(event, ToolCallFinished):
            marker = "x" if event.record.is_error else "ok"
            print(f"   [{marker}] {event.record.name} ({event.record.duration_ms}ms)")
        elif isinstance(event, TurnFinished):
            outcome = event.outcome
            if outcome.text and not (streamed and outcome.succeeded):
                print(("\n" if streamed else "") + outcome.text)
            elif streamed:
                print()
            print(
                f"[{outcome.iterations} iteration(s), "
                f"{outcome.usage.input_tokens}/{outcome.usage.output_tokens} tokens, ${outcome.cost:.4f}]"
            )


async def _run_plan(components: dict) -> None:
    loop: AgentLoop = components["loop"]
    plan = loop.plan
    if plan is None:
        print("No plan.")
        return
    report = await components["scheduler"].run(plan)
    print(report.describe())


async def handle_command(components: dict, command: str) -> bool:
    """Run one slash command. Returns False to quit."""
    loop: AgentLoop = components["loop"]
    store: PlanStore = components["store"]
    bus: EventBus = components["bus"]
    plan = loop.plan

    try:
        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            print(HELP)
        elif command == "/plan":
            loop.plan_mode = not loop.plan_mode
            print(f"Plan mode {'on' if loop.plan_mode else 'off'}")
        elif command == "/status":
            print(format_status(plan) if plan else "No plan.")
        elif command == "/clear":
            loop.reset()
            print("Conversation cleared.")
        elif command == "/approve":
            if plan is None or plan.status != PlanStatus.PENDING_APPROVAL:
                print("No plan is waiting for approval.")
                return True
            plan.approve()
            await store.save(plan)
            await bus.emit(
                Event(
                    type=PLAN_STATUS_CHANGED,
                    session_id=plan.session_id,
                    data={"plan_id": plan.id, "from": PlanStatus.PENDING_APPROVAL.value, "to": plan.status.value},
                )
            )
            path = components["exporter"].export(plan)
            if path:
                print(f"Plan exported to {path}")
            await _run_plan(components)
        elif command == "/reject":
            if plan is None:
                print("No plan.")
                return True
            plan.reject()
            await store.save(plan)
            print(f"Rejected plan '{plan.title}'.")
        elif command == "/execute":
            await _run_plan(components)
        else:
            print(f"Unknown command {command}\n{HELP}")
    except PlanError as e:
        print(f"Plan error: {e}")
    return True


async def repl(components: dict) -> None:
    loop: AgentLoop = components["loop"]
    presenter = asyncio.create_task(present_approvals(components["gate"]), name="approval-presenter")
    print(f"tern session {loop.session_id} ({loop.provider.name}, {loop.model}). /help for commands.")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "\ntern> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await handle_command(components, line.split()[0]):
                    break
                continue
            await run_prompt(loop, line)
    finally:
        presenter.cancel()
        try:
            await presenter
        except asyncio.CancelledError:
            pass


async def run(settings: Settings, *, session_id: str | None, plan_mode: bool, prompt: str | None) -> None:
    components = await create_components(settings, session_id=session_id, plan_mode=plan_mode)
    try:
        if prompt:
            presenter = asyncio.create_task(present_approvals(components["gate"]))
            try:
                await run_prompt(components["loop"], prompt)
            finally:
                presenter.cancel()
        else:
            await repl(components)
    finally:
        await shutdown_components(components)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tern", description="Terminal coding assistant")
    parser.add_argument("prompt", nargs="?", help="run a single prompt and exit")
    parser.add_argument("--plan", action="store_true", help="start in plan mode")
    parser.add_argument("--auto-approve", action="store_true", help="skip approval prompts")
    parser.add_argument("--session", help="resume a session by id")
    parser.add_argument("--model", help="model name (defaults to the provider's)")
    parser.add_argument("--stream", action="store_true", help="stream model output")
    return parser


def main() -> None:
    """Entry point -- parse arguments and settings, run the REPL."""
    args = build_parser().parse_args()
    overrides = {}
    if args.auto_approve:
        overrides["auto_approve"] = True
    if args.model:
        overrides["model"] = args.model
    if args.stream:
        overrides["stream"] = True
    settings = Settings(**overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(run(settings, session_id=args.session, plan_mode=args.plan, prompt=args.prompt))
    except TernError as e:
        logger.error("%s", e)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
