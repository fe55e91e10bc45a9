"""
Verification Driver
===================

[VERIFY] Внешняя проверка provide/lookup через API флота
(Fleet в процессе или RPCClient снаружи):

1. Назначение: CID с позицией i объявляет узел i mod n и, при
   избыточности, узел (i + n // 2) mod n. Peer ID объявивших
   узлов записываются в карту назначений.
2. Проверка: для каждого CID карты и каждого узла 0..n-1 выполняется
   lookup. Провал, если:
   - результат пуст (no_providers)
   - среди найденных есть ID не из карты (unexpected_provider)
   - lookup завершился ошибкой (lookup_error)
   Проверка множества - вложение, а не равенство: узел может увидеть
   только часть провайдеров.
3. Гонка с бюджетом времени: по истечении duration результат
   помечается timed_out, незавершённые lookup не отменяются.

Первая неудачная пара (CID, узел) в порядке обхода возвращается в
VerificationResult; исключение не бросается.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from core.cid import CID
from core.errors import ConfigError, HarnessError
from core.peer import AddrInfo

logger = logging.getLogger(__name__)


NO_PROVIDERS = "no_providers"
UNEXPECTED_PROVIDER = "unexpected_provider"
LOOKUP_ERROR = "lookup_error"


class ProviderAssignment:
    """Упорядоченная карта CID -> Peer ID узлов, объявивших его."""

    def __init__(self) -> None:
        self._entries: Dict[CID, List[str]] = {}

    def add(self, cid: CID, peer_id: str) -> None:
        ids = self._entries.setdefault(cid, [])
        if peer_id not in ids:
            ids.append(peer_id)

    def expected(self, cid: CID) -> Set[str]:
        return set(self._entries.get(cid, ()))

    @property
    def cids(self) -> List[CID]:
        return list(self._entries)

    def items(self) -> Iterator[Tuple[CID, List[str]]]:
        return iter(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cid: CID) -> bool:
        return cid in self._entries


@dataclass
class VerificationFailure:
    """Первая неудачная пара (CID, узел)."""

    cid: CID
    cid_index: int
    host_index: int
    reason: str
    found: List[AddrInfo] = field(default_factory=list)
    cause: Optional[BaseException] = None

    def __str__(self) -> str:
        if self.reason == NO_PROVIDERS:
            detail = f"failed to find providers for key {self.cid}"
        elif self.reason == UNEXPECTED_PROVIDER:
            detail = f"found provider that doesn't have key {self.cid}"
        else:
            detail = f"lookup for key {self.cid} failed: {self.cause}"
        return f"{self.cid_index}: {detail} at host {self.host_index}"


@dataclass
class VerificationResult:
    failure: Optional[VerificationFailure] = None
    timed_out: bool = False
    checked: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.timed_out


# ============================================================================
# Assignment
# ============================================================================

async def assign_providers(
    api,
    cids: Sequence[CID],
    num_hosts: Optional[int] = None,
    redundancy: bool = True,
) -> ProviderAssignment:
    """
    Назначить провайдеров тестовым CID через ``api.provide``.

    Ошибки provide/id не перехватываются: назначение прерывается.

    Raises:
        ConfigError: во флоте нет узлов
    """
    if num_hosts is None:
        num_hosts = await api.num_hosts()
    if num_hosts < 1:
        raise ConfigError("cannot assign providers: fleet has no hosts")

    assignment = ProviderAssignment()
    for i, cid in enumerate(cids):
        indices = [i % num_hosts]
        if redundancy:
            indices.append((i + num_hosts // 2) % num_hosts)

        for index in indices:
            await api.provide(index, [cid])
            assignment.add(cid, await api.id(index))

        logger.debug(f"[VERIFY] cid {i} {cid} assigned to hosts {indices}")

    logger.info(f"[VERIFY] assigned {len(assignment)} cids across {num_hosts} hosts")
    return assignment


# ============================================================================
# Verification
# ============================================================================

async def verify_providers(
    api,
    assignment: ProviderAssignment,
    num_hosts: int,
    prefix_length: int = 0,
    result: Optional[VerificationResult] = None,
) -> VerificationResult:
    """
    Проверить, что каждый узел находит провайдеров каждого CID.

    Args:
        api: Fleet или RPCClient
        assignment: Карта назначений
        num_hosts: Количество узлов
        prefix_length: Длина префикса для lookup
        result: Объект, в котором ведётся счётчик проверок

    Returns:
        VerificationResult с первой неудачей (или без неё)
    """
    result = result if result is not None else VerificationResult()

    for cid_index, (cid, ids) in enumerate(assignment.items()):
        expected = set(ids)

        for host_index in range(num_hosts):
            try:
                found = await api.lookup(host_index, cid, prefix_length)
            except HarnessError as e:
                result.failure = VerificationFailure(
                    cid, cid_index, host_index, LOOKUP_ERROR, cause=e,
                )
                break
            result.checked += 1

            if not found:
                result.failure = VerificationFailure(cid, cid_index, host_index, NO_PROVIDERS)
                break

            if any(p.id not in expected for p in found):
                result.failure = VerificationFailure(
                    cid, cid_index, host_index, UNEXPECTED_PROVIDER, found=list(found),
                )
                break

        if result.failure is not None:
            logger.error(f"[VERIFY] {result.failure}")
            return result

        logger.info(f"[VERIFY] cid {cid_index} {cid} found by all {num_hosts} hosts")

    return result


async def run_verification(
    api,
    assignment: ProviderAssignment,
    num_hosts: int,
    prefix_length: int = 0,
    duration: Optional[float] = None,
) -> VerificationResult:
    """
    Проверка с ограничением по времени.

    По истечении ``duration`` возвращает результат с ``timed_out=True``;
    задача проверки при этом не отменяется.
    """
    progress = VerificationResult()
    task = asyncio.ensure_future(verify_providers(api, assignment, num_hosts, prefix_length, progress))

    done, _ = await asyncio.wait({task}, timeout=duration)
    if task in done:
        return task.result()

    logger.warning(f"[VERIFY] duration of {duration}s elapsed after {progress.checked} lookups")
    return VerificationResult(timed_out=True, checked=progress.checked)
