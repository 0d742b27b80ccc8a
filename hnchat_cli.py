import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_text(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return resp.text
    if isinstance(detail, dict):
        return detail.get("message") or json.dumps(detail)
    return str(detail)


def _print_conversation(convo: Dict[str, Any]) -> None:
    print(f"{convo.get('id')}  [{convo.get('state')}]  {convo.get('user_query')}")
    for step in convo.get("steps") or []:
        summary = (step.get("results") or {}).get("summary") or ""
        print(f"  #{step.get('step_id')} {step.get('step_type')} ({step.get('status')}) {summary}")
        for call in step.get("tool_calls") or []:
            outcome = f"error: {call['error']}" if call.get("error") else "ok"
            print(f"      - {call.get('tool_name')} {json.dumps(call.get('parameters'))} -> {outcome}")
    final = _final_answer(convo)
    if final:
        print()
        print(final)


def _final_answer(convo: Dict[str, Any]) -> Optional[str]:
    for step in reversed(convo.get("steps") or []):
        if step.get("step_type") == "ResultSynthesis" and step.get("status") == "Completed":
            return step.get("llm_response")
    return None


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: Dict[str, Any] = {"query": args.query, "preferences": {}}
    if args.max_steps is not None:
        payload["preferences"]["max_steps"] = args.max_steps
    if args.format:
        payload["preferences"]["response_format"] = args.format
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/conversations"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to start conversation: HTTP {resp.status_code}: {_error_text(resp)}")
            return 1
        convo = resp.json()["conversation"]
        if not args.wait:
            _print_conversation(convo)
            return 0
        resp = client.post(_join_url(base, f"/api/conversations/{convo['id']}/run"), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Conversation {convo['id']} stopped: HTTP {resp.status_code}: {_error_text(resp)}")
            return 1
        _print_conversation(resp.json()["conversation"])
    return 0


def run_continue(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"user_input": args.input} if args.input is not None else None
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, f"/api/conversations/{args.conversation_id}/continue"),
            json=payload,
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            print(f"Failed to continue: HTTP {resp.status_code}: {_error_text(resp)}")
            return 1
        data = resp.json()
        step = data.get("step") or {}
        summary = (step.get("results") or {}).get("summary") or ""
        print(f"#{step.get('step_id')} {step.get('step_type')} ({step.get('status')}) {summary}")
        print(f"State: {data.get('state')}")
    return 0


def run_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/conversations"), params={"limit": args.limit}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list conversations: HTTP {resp.status_code}")
            return 1
        conversations = resp.json().get("conversations") or []
    if not conversations:
        print("No conversations.")
        return 0
    for convo in conversations:
        print(f"{convo['id']}  {convo['updated_at']}  [{convo['state']}]  {convo['user_query']}")
    return 0


def run_show(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/conversations/{args.conversation_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch conversation: HTTP {resp.status_code}: {_error_text(resp)}")
            return 1
        _print_conversation(resp.json()["conversation"])
    return 0


def run_delete(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.delete(_join_url(base, f"/api/conversations/{args.conversation_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to delete conversation: HTTP {resp.status_code}")
            return 1
    print(f"Deleted {args.conversation_id}")
    return 0


def run_tools(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/tools"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list tools: HTTP {resp.status_code}")
            return 1
        tools = resp.json().get("tools") or []
        metrics = {}
        if args.metrics:
            metrics_resp = client.get(_join_url(base, "/api/tools/metrics"), timeout=10)
            if metrics_resp.status_code < 400:
                metrics = metrics_resp.json().get("metrics") or {}
    for tool in tools:
        print(f"{tool['name']} ({tool['category']}): {tool['description']}")
        stats = metrics.get(tool["name"])
        if stats:
            print(
                f"    runs={stats['total_executions']} ok={stats['successful_executions']} "
                f"failed={stats['failed_executions']} avg={stats['average_execution_time_ms']:.0f}ms"
            )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="hnchat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Start a conversation")
    ask.add_argument("query", help="Question about the Hacker News data")
    ask.add_argument("--wait", action="store_true", help="Drive the conversation to completion")
    ask.add_argument("--max-steps", type=int, default=None, help="Step limit for this conversation")
    ask.add_argument("--format", default=None, help="Response format preference")
    ask.add_argument("--timeout", type=int, default=300, help="Max wait seconds")

    cont = subparsers.add_parser("continue", help="Advance a conversation by one step")
    cont.add_argument("conversation_id")
    cont.add_argument("--input", default=None, help="Answer to a clarification request")
    cont.add_argument("--timeout", type=int, default=120, help="Max wait seconds")

    listing = subparsers.add_parser("list", help="List recent conversations")
    listing.add_argument("--limit", type=int, default=20)

    show = subparsers.add_parser("show", help="Show a conversation and its steps")
    show.add_argument("conversation_id")

    delete = subparsers.add_parser("delete", help="Delete a conversation")
    delete.add_argument("conversation_id")

    tools = subparsers.add_parser("tools", help="List registered tools")
    tools.add_argument("--metrics", action="store_true", help="Include execution metrics")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {
        "ask": run_ask,
        "continue": run_continue,
        "list": run_list,
        "show": run_show,
        "delete": run_delete,
        "tools": run_tools,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
