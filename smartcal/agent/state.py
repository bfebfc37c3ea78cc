from __future__ import annotations

import time
from typing import Callable, Dict, Optional

from ..config import CONFIRMATION_TTL_SECONDS
from ..utils import _log_debug
from .schemas import ConfirmationContext


class ConfirmationStateMachine:
  """Per-session pending confirmations (Idle <-> AwaitingConfirmation).

  A context older than `ttl_seconds` is dropped on the next read, so an
  expired session reads as Idle.
  """

  def __init__(self,
               ttl_seconds: float = CONFIRMATION_TTL_SECONDS,
               clock: Callable[[], float] = time.time):
    self.ttl_seconds = ttl_seconds
    self.clock = clock
    self._pending: Dict[str, ConfirmationContext] = {}

  def get(self, session_id: str) -> Optional[ConfirmationContext]:
    stored = self._pending.get(session_id)
    if stored is None:
      return None
    if self.clock() - stored.timestamp > self.ttl_seconds:
      _log_debug(f"[AGENT] confirmation expired session={session_id}")
      self._pending.pop(session_id, None)
      return None
    return stored.model_copy(deep=True)

  def is_awaiting(self, session_id: str) -> bool:
    return self.get(session_id) is not None

  def begin(self, session_id: str, context: ConfirmationContext) -> ConfirmationContext:
    stored = context.model_copy(update={"timestamp": self.clock()}, deep=True)
    self._pending[session_id] = stored
    _log_debug(f"[AGENT] awaiting {stored.pending_action} confirmation "
               f"session={session_id} targets={len(stored.target_events)}")
    return stored.model_copy(deep=True)

  def clear(self, session_id: str) -> Optional[ConfirmationContext]:
    if not session_id:
      return None
    return self._pending.pop(session_id, None)
