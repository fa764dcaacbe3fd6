"""Local agent CLI entry point."""

from __future__ import annotations

import argparse
import sys


def main() -> None:

    import importlib.metadata

    try:
        version = importlib.metadata.version("localagent")
    except importlib.metadata.PackageNotFoundError:
        version = "0.1.0"

    parser = argparse.ArgumentParser(
        prog="localagent",
        description="Local automation agent with multi-provider LLM routing",
    )
    # Global arguments
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {version}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.localagent/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve subcommand
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")

    # run subcommand
    run_parser = subparsers.add_parser("run", help="Run the agent once for a goal")
    run_parser.add_argument("goal", help="What the agent should do")
    run_parser.add_argument("--max-steps", type=int, default=None, help="Step budget (clamped to 1-25)")
    run_parser.add_argument("--temperature", type=float, default=None, help="Sampling temperature (clamped to 0-1)")
    run_parser.add_argument("--tools", nargs="*", default=None, help="Only allow tools matching these prefixes")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Approve destructive tool calls without asking")

    # status subcommand
    subparsers.add_parser("status", help="Probe every configured provider")

    # providers subcommand
    subparsers.add_parser("providers", help="List configured providers and their adapters")

    args = parser.parse_args()

    # Initialize config globally with the provided path (if any)
    from localagent.node.config import get_config
    cfg = get_config(args.config)

    from localagent.logger import setup_logging
    # Only the server logs to the console; other commands print their own output
    setup_logging(cfg.log_file, cfg.log_level, stream=args.command == "serve")

    if args.command == "serve":
        _run_serve(args)
    elif args.command == "run":
        sys.exit(_run_agent(args))
    elif args.command == "status":
        _run_status(args)
    elif args.command == "providers":
        _run_providers(args)
    else:
        parser.print_help()
        sys.exit(1)


def _run_serve(args) -> None:
    """Start the HTTP server."""
    from localagent.node.server import run_server
    run_server(host=args.host, port=args.port)


def _approve_all(tool: str, params: dict) -> bool:
    return True


async def _ask_confirmation(tool: str, params: dict) -> bool:
    """Ask on the terminal before a destructive tool runs. EOF counts as no."""
    import asyncio

    Y = "\033[33m"
    B = "\033[1m"
    X = "\033[0m"

    # input() blocks; keep it off the event loop so health checks keep running
    try:
        answer = await asyncio.to_thread(input, f"{Y}Allow {B}{tool}{X}{Y} with {params}? [y/N] {X}")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _run_agent(args) -> int:
    """Run one goal in the foreground, printing each step."""
    import asyncio

    from localagent.node.agent import AgentCallbacks
    from localagent.node.config import get_config
    from localagent.node.server import build_components

    G = "\033[32m"
    R = "\033[31m"
    Y = "\033[33m"
    D = "\033[2m"
    X = "\033[0m"

    overrides: dict = {}
    if args.max_steps is not None:
        overrides["max_steps"] = args.max_steps
    if args.temperature is not None:
        overrides["temperature"] = args.temperature
    if args.tools:
        overrides["allowed_tools"] = args.tools

    def on_step(step, run) -> None:
        if step.action:
            print(f"{D}[{step.index + 1}]{X} {step.thought}")
            print(f"    {Y}→ {step.action}{X} {step.action_input}")
            observation = (step.observation or "").strip().replace("\n", "\n      ")
            print(f"    {D}{observation[:500]}{X}")
        elif step.thought:
            print(f"{D}[{step.index + 1}] {step.thought}{X}")

    async def run() -> int:
        router, _, orchestrator = build_components(get_config())
        try:
            await router.start()
            if not router.has_available_provider():
                print(f"{Y}No LLM provider passed its health check; trying anyway.{X}")
            result = await orchestrator.run(
                args.goal,
                overrides or None,
                AgentCallbacks(
                    on_step=on_step,
                    on_confirm_action=_approve_all if args.yes else _ask_confirmation,
                ),
            )
        finally:
            await router.aclose()

        color = G if result.status == "completed" else R
        print()
        print(f"{color}● {result.status}{X} {D}({len(result.steps)} steps, {result.total_duration:.1f}s"
              f"{', ' + result.provider + '/' + result.model if result.provider else ''}){X}")
        if result.error:
            print(f"{R}{result.error}{X}")
        if result.result:
            print()
            print(result.result)
        return 0 if result.status == "completed" else 1

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        print(f"\n{R}Interrupted.{X}")
        return 130


def _run_status(args) -> None:
    """Probe every provider and print a health table."""
    import asyncio

    from localagent.node.config import get_config
    from localagent.node.llm import LLMRouter

    G = "\033[32m"
    R = "\033[31m"
    C = "\033[36m"
    D = "\033[2m"
    B = "\033[1m"
    X = "\033[0m"
    ON = f"{G}● online{X}"
    OFF = f"{R}● offline{X}"

    async def check() -> None:
        cfg = get_config()
        router = LLMRouter(cfg.router_config())
        try:
            await router.run_health_checks()
        finally:
            await router.aclose()

        print()
        print(f"  {B}LLM providers{X}  {D}strategy: {router.config.strategy}{X}")
        print(f"  {C}{'─' * 60}{X}")
        for h in router.get_health_status():
            print(f"  {B}{h.name:<16}{X} {ON if h.available else OFF}  {D}{h.last_latency:.2f}s{X}")
            print(f"  {D}Endpoint:{X}  {h.endpoint}")
            print(f"  {D}Model:{X}     {h.model}")
            if h.error:
                print(f"  {D}Error:{X}     {R}{h.error}{X}")
            if h.models:
                print(f"  {D}Available:{X} {', '.join(h.models[:6])}{' ...' if len(h.models) > 6 else ''}")
            print()

        server_url = f"http://{cfg.server_host}:{cfg.server_port}"
        import httpx
        try:
            async with httpx.AsyncClient(timeout=2.0) as client:
                resp = await client.get(f"{server_url}/api/status")
                server_status = ON if resp.status_code == 200 else OFF
        except httpx.HTTPError:
            server_status = OFF
        print(f"  {B}{'Server':<16}{X} {server_status}  {D}{server_url}{X}")
        print()

    asyncio.run(check())


def _run_providers(args) -> None:
    """List configured providers with the adapter each one resolves to."""
    from localagent.node.config import get_config
    from localagent.node.llm.providers import provider_family

    cfg = get_config()
    router_cfg = cfg.router_config()

    print(f"Strategy: {router_cfg.strategy}")
    for pc in sorted(router_cfg.providers, key=lambda p: p.priority):
        family = provider_family(pc).family
        where = "local" if pc.is_local else "cloud"
        state = "" if pc.enabled else "  (disabled)"
        print(f"  {pc.priority:>4}  {pc.name:<16} {family:<14} {where:<6} {pc.model}  {pc.endpoint}{state}")


if __name__ == "__main__":
    main()
