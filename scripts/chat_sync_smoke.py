#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx


@dataclass
class Scenario:
  name: str
  run: Callable[[Any, Any], Awaitable[dict[str, Any]]]


def _apis(app: Any, subject_id: str) -> tuple[Any, Any]:
  from therapy_transport import SubjectApi, TherapistApi

  subject = SubjectApi(base_url="http://smoke", user_id=subject_id, transport=httpx.ASGITransport(app=app))
  therapist = TherapistApi(base_url="http://smoke", user_id="smoke-therapist", transport=httpx.ASGITransport(app=app))
  return subject, therapist


def _store(api: Any, sender_type: str) -> Any:
  from therapy_sync import ConversationStore

  return ConversationStore(
    load_fn=api.load,
    send_fn=api.send,
    poll_fn=api.poll,
    sender_type=sender_type,
    sender_id=api.user_id,
  )


async def ai_reply(subject: Any, therapist: Any) -> dict[str, Any]:
  store = _store(subject, "subject")
  await store.load()
  outcome = await store.send("Today was a hard day at work.")
  senders = [message.sender_type for message in store.messages]
  return {"pass": outcome.sent and senders == ["subject", "ai"], "send_status": outcome.status, "senders": senders}


async def tagged_message(subject: Any, therapist: Any) -> dict[str, Any]:
  store = _store(subject, "subject")
  await store.load()
  outcome = await store.send("@therapist could we talk tomorrow? #need_talk")
  alerts = await therapist.get_alerts(unread_only=True)
  urgencies = [alert.urgency for alert in alerts if alert.conversation_id == store.conversation_id]
  return {
    "pass": outcome.sent and len(store.messages) == 1 and urgencies == ["urgent"],
    "send_status": outcome.status,
    "alert_urgencies": urgencies,
  }


async def blocked_message(subject: Any, therapist: Any) -> dict[str, Any]:
  store = _store(subject, "subject")
  await store.load()
  outcome = await store.send("I have been thinking about suicide.")
  notice = store.messages[-1].sender_type if store.messages else None
  conversation = (await therapist.load(store.conversation_id)).conversation
  return {
    "pass": outcome.status == "blocked" and notice == "system" and conversation.risk_level == "critical",
    "send_status": outcome.status,
    "risk_level": conversation.risk_level,
    "ai_enabled": conversation.ai_enabled,
  }


async def therapist_reply_reaches_subject(subject: Any, therapist: Any) -> dict[str, Any]:
  from therapy_sync import IndicatorBoard, UnreadReconciler

  subject_store = _store(subject, "subject")
  await subject_store.load()
  therapist_store = _store(therapist, "therapist")
  await therapist_store.load(subject_store.conversation_id)
  await therapist_store.send("Thank you for writing. I will follow up at our session.")

  board = IndicatorBoard()
  reconciler = UnreadReconciler(
    check_updates=subject.check_updates,
    mark_messages_read=subject.mark_messages_read,
    store=subject_store,
    indicators=board,
  )
  badge = await reconciler.check_badge()
  merged = await reconciler.check()
  last = subject_store.messages[-1].sender_type if subject_store.messages else None
  return {
    "pass": badge == 1 and merged and last == "therapist" and board.count == 0,
    "badge_before_read": badge,
    "badge_after_read": board.count,
  }


async def run_scenarios(app: Any, scenarios: list[Scenario]) -> list[dict[str, Any]]:
  results: list[dict[str, Any]] = []
  for index, scenario in enumerate(scenarios):
    subject, therapist = _apis(app, f"smoke-subject-{index}")
    async with subject, therapist:
      try:
        result = await scenario.run(subject, therapist)
      except Exception as exc:
        result = {"pass": False, "error": f"{type(exc).__name__}: {exc}"}
    results.append({"name": scenario.name, **result})
  return results


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Smoke runs never touch a real provider or the developer database.
  os.environ.setdefault("THERAPY_HOST_CHAT_PROVIDER", "none")
  os.environ.setdefault("THERAPY_HOST_THERAPISTS", "smoke-therapist:Dr Smoke")
  os.environ.setdefault("THERAPY_HOST_DB_PATH", str(Path(tempfile.mkdtemp()) / "smoke.sqlite"))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  scenarios = [
    Scenario(name="Subject Message Gets AI Reply", run=ai_reply),
    Scenario(name="Tagged Message Raises Therapist Alert", run=tagged_message),
    Scenario(name="Unsafe Message Is Blocked", run=blocked_message),
    Scenario(name="Therapist Reply Reaches Subject", run=therapist_reply_reaches_subject),
  ]
  results = asyncio.run(run_scenarios(backend_module.app, scenarios))

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chat Sync Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- THERAPY_HOST_CHAT_PROVIDER: `{os.getenv('THERAPY_HOST_CHAT_PROVIDER')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    report_lines.append("```json")
    report_lines.append(json.dumps({k: v for k, v in item.items() if k != "name"}, indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CHAT_SYNC_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
