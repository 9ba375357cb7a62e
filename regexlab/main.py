"""
regexlab/main.py: command-line entry point.

Subcommands::

    regexlab apply --text "a1b2" --stage "\\d" --stage "[a-z]" --replace X
    regexlab generate "all email addresses"
    regexlab rules list|save|delete|clear
    regexlab workspaces list|show|save|delete
    regexlab flags

Every command returns an exit status; regexlab errors print a one-line
message to stderr and exit with 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from regexlab import __version__
from regexlab.core.config import RegexLabConfig, load_config
from regexlab.core.constants import C, FLAG_DESCRIPTIONS
from regexlab.core.errors import EngineUnavailableError, RegexLabError
from regexlab.core.logger import get_logger
from regexlab.llm.backend import TransformersBackend
from regexlab.llm.controller import InferenceEngineController
from regexlab.llm.translator import NaturalLanguageTranslator
from regexlab.output.clipboard import CommandClipboard, copy_all_matches, copy_transformed
from regexlab.pipeline.stages import Stage
from regexlab.pipeline.workbench import Workbench
from regexlab.storage.kv_store import JsonFileStore
from regexlab.storage.library import RuleLibrary, WorkspaceLibrary
from regexlab.storage.records import Workspace

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────


class _StageAction(argparse.Action):
    """
    Collect ``--stage P [--flags F] [--replace R]`` groups into dicts.

    ``--stage`` opens a new group; ``--flags`` and ``--replace`` fill in the
    most recent one.
    """

    def __call__(self, parser, namespace, values, option_string=None):  # type: ignore[no-untyped-def]
        stages = list(getattr(namespace, "stages", None) or [])
        if option_string == "--stage":
            stages.append({"source_expression": values, "flags": C.DEFAULT_FLAGS, "replacement": ""})
        else:
            if not stages:
                parser.error(f"{option_string} must follow a --stage")
            key = "flags" if option_string == "--flags" else "replacement"
            stages[-1][key] = values
        namespace.stages = stages


def _add_stage_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--stage", dest="stages", action=_StageAction, metavar="PATTERN",
                   help="Add a stage with this expression (repeatable, applied in order)")
    p.add_argument("--flags", dest="stages", action=_StageAction, metavar="FLAGS",
                   help="Flags of the preceding --stage (default 'g')")
    p.add_argument("--replace", dest="stages", action=_StageAction, metavar="TEMPLATE",
                   help="Replacement template of the preceding --stage")


def _add_text_options(p: argparse.ArgumentParser) -> None:
    src = p.add_mutually_exclusive_group()
    src.add_argument("--text", help="Input text")
    src.add_argument("--file", type=Path, help="Read input text from a file")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="regexlab",
        description="regexlab: chain regex stages over text, or generate a pattern from a description",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", type=Path, default=None, help="Path to regexlab.yaml")
    p.add_argument("--store", type=Path, default=None, help="Path to the JSON store file")
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Minimum log level for stderr output (default from config)",
    )
    sub = p.add_subparsers(dest="command", required=True)

    apply_p = sub.add_parser("apply", help="Run stages over text")
    _add_text_options(apply_p)
    _add_stage_options(apply_p)
    apply_p.add_argument("--workspace", help="Load text and stages from a saved workspace")
    apply_p.add_argument("--rule", action="append", default=[], metavar="NAME",
                         help="Append a stage from a saved rule (repeatable)")
    apply_p.add_argument("--copy", choices=["matches", "transformed"], default=None,
                         help="Copy the result to the clipboard")
    apply_p.add_argument("--json", action="store_true", help="Print the result as JSON")

    gen_p = sub.add_parser("generate", help="Generate a pattern from a description")
    gen_p.add_argument("description", help="What the pattern should match")
    gen_p.add_argument("--save-as", metavar="NAME", help="Also save the pattern as a rule")

    rules_p = sub.add_parser("rules", help="Manage saved rules")
    rules_sub = rules_p.add_subparsers(dest="action", required=True)
    rules_sub.add_parser("list", help="List saved rules")
    save_r = rules_sub.add_parser("save", help="Save or replace a rule")
    save_r.add_argument("name")
    save_r.add_argument("pattern")
    save_r.add_argument("--flags", default=C.DEFAULT_FLAGS)
    save_r.add_argument("--replace", dest="replacement", default="")
    del_r = rules_sub.add_parser("delete", help="Delete a rule")
    del_r.add_argument("name")
    rules_sub.add_parser("clear", help="Delete every rule")

    ws_p = sub.add_parser("workspaces", help="Manage saved workspaces")
    ws_sub = ws_p.add_subparsers(dest="action", required=True)
    ws_sub.add_parser("list", help="List saved workspaces")
    show_w = ws_sub.add_parser("show", help="Show a workspace")
    show_w.add_argument("name")
    save_w = ws_sub.add_parser("save", help="Save or replace a workspace")
    save_w.add_argument("name")
    _add_text_options(save_w)
    _add_stage_options(save_w)
    del_w = ws_sub.add_parser("delete", help="Delete a workspace")
    del_w.add_argument("name")

    sub.add_parser("flags", help="Show the accepted flag letters")
    return p


# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _read_text(args: argparse.Namespace, fallback: Optional[str] = None) -> str:
    if args.text is not None:
        return args.text
    if args.file is not None:
        return args.file.read_text(encoding="utf-8")
    if fallback is not None:
        return fallback
    if not sys.stdin.isatty():
        return sys.stdin.read()
    return ""


def _stages_from_args(args: argparse.Namespace) -> list[Stage]:
    return [Stage(**fields) for fields in (getattr(args, "stages", None) or [])]


def _print_workspace(ws: Workspace) -> None:
    print(f"Workspace: {ws.name}")
    print(f"Text: {ws.text!r}")
    for i, stage in enumerate(ws.stages, 1):
        print(f"  {i}. /{stage.source_expression}/{stage.flags}  ->  {stage.replacement!r}")


# ──────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────


def _cmd_apply(args: argparse.Namespace, cfg: RegexLabConfig, store: JsonFileStore) -> int:
    stages: list[Stage] = []
    base_text: Optional[str] = None
    if args.workspace:
        ws = WorkspaceLibrary(store).get(args.workspace)
        if ws is None:
            print(f"error: no workspace named {args.workspace!r}", file=sys.stderr)
            return 1
        stages.extend(ws.stages)
        base_text = ws.text
    if args.rule:
        rules = RuleLibrary(store)
        for name in args.rule:
            rule = rules.get(name)
            if rule is None:
                print(f"error: no rule named {name!r}", file=sys.stderr)
                return 1
            stages.append(
                Stage(source_expression=rule.source_expression, flags=rule.flags, replacement=rule.replacement)
            )
    stages.extend(_stages_from_args(args))

    bench = Workbench(_read_text(args, base_text), stages)
    if bench.error is not None:
        raise bench.error

    if args.json:
        print(json.dumps({"matches": list(bench.matches), "transformed_text": bench.transformed_text},
                         ensure_ascii=False, indent=2))
    else:
        print(f"Matches ({len(bench.matches)}):")
        for match in bench.matches:
            print(f"  {match}")
        print("Transformed:")
        print(bench.transformed_text)

    if args.copy == "matches":
        copy_all_matches(CommandClipboard(), bench.matches)
        print(f"Copied {len(bench.matches)} match(es) to the clipboard", file=sys.stderr)
    elif args.copy == "transformed":
        copy_transformed(CommandClipboard(), bench.transformed_text)
        print("Copied transformed text to the clipboard", file=sys.stderr)
    return 0


async def _generate(description: str, cfg: RegexLabConfig) -> str:
    controller = InferenceEngineController(TransformersBackend(cfg.engine), cfg.engine)
    translator = NaturalLanguageTranslator(controller, cfg.translator)
    try:
        await controller.start()
        try:
            state = await controller.wait_until_settled(timeout=cfg.translator.ready_timeout_s)
        except asyncio.TimeoutError as exc:
            raise EngineUnavailableError(
                f"Model not ready after {cfg.translator.ready_timeout_s:.0f}s"
            ) from exc
        if not state.is_ready:
            raise EngineUnavailableError(state.last_failure_reason)
        return await translator.translate(description)
    finally:
        await controller.shutdown()


def _cmd_generate(args: argparse.Namespace, cfg: RegexLabConfig, store: JsonFileStore) -> int:
    pattern = asyncio.run(_generate(args.description, cfg))
    print(pattern)
    if args.save_as:
        RuleLibrary(store).save(args.save_as, pattern, C.DEFAULT_FLAGS, "")
        print(f"Saved as rule {args.save_as!r}", file=sys.stderr)
    return 0


def _cmd_rules(args: argparse.Namespace, cfg: RegexLabConfig, store: JsonFileStore) -> int:
    rules = RuleLibrary(store)
    if args.action == "list":
        for rule in rules.list():
            print(f"{rule.name}\t/{rule.source_expression}/{rule.flags}\t{rule.replacement}")
        return 0
    if args.action == "save":
        rule = rules.save(args.name, args.pattern, args.flags, args.replacement)
        print(f"Saved rule {rule.name!r}")
        return 0
    if args.action == "delete":
        if not rules.delete(args.name):
            print(f"error: no rule named {args.name!r}", file=sys.stderr)
            return 1
        print(f"Deleted rule {args.name!r}")
        return 0
    rules.clear()
    print("Cleared all rules")
    return 0


def _cmd_workspaces(args: argparse.Namespace, cfg: RegexLabConfig, store: JsonFileStore) -> int:
    library = WorkspaceLibrary(store)
    if args.action == "list":
        for ws in library.list():
            print(f"{ws.name}\t{len(ws.stages)} stage(s)\t{len(ws.text)} chars")
        return 0
    if args.action == "show":
        ws = library.get(args.name)
        if ws is None:
            print(f"error: no workspace named {args.name!r}", file=sys.stderr)
            return 1
        _print_workspace(ws)
        return 0
    if args.action == "save":
        stages = _stages_from_args(args) or [Stage()]
        ws = library.save(Workspace(name=args.name, text=_read_text(args), stages=tuple(stages)))
        print(f"Saved workspace {ws.name!r}")
        return 0
    if not library.delete(args.name):
        print(f"error: no workspace named {args.name!r}", file=sys.stderr)
        return 1
    print(f"Deleted workspace {args.name!r}")
    return 0


def _cmd_flags(args: argparse.Namespace, cfg: RegexLabConfig, store: JsonFileStore) -> int:
    for flag, description in FLAG_DESCRIPTIONS.items():
        print(f"  {flag}  {description}")
    return 0


_COMMANDS = {
    "apply": _cmd_apply,
    "generate": _cmd_generate,
    "rules": _cmd_rules,
    "workspaces": _cmd_workspaces,
    "flags": _cmd_flags,
}


# ──────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse *argv*, run one command and return its exit status."""
    args = _build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    _setup_logging(args.log_level or cfg.logging.level)
    store = JsonFileStore(args.store or cfg.storage.resolved_path)
    get_logger().info("system", "command", {"command": args.command})

    try:
        return _COMMANDS[args.command](args, cfg, store)
    except (RegexLabError, ValueError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        get_logger().flush()


if __name__ == "__main__":
    sys.exit(main())
