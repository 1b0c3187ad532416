"""Run the probe chain for every volume concurrently under a timeout."""
from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
import logging

from diskmon.models import HealthMethod, HealthResult, Volume
from diskmon.probes import HealthProber

DEFAULT_TIMEOUT_S = 30.0


def disabled_results(volumes: list[Volume]) -> list[HealthResult]:
    """Results for a run with health checks switched off; no probes run."""
    return [HealthResult.degraded(HealthMethod.DISABLED) for _ in volumes]


class HealthCollector:
    """Fan the prober out over all volumes, one worker thread each.

    Every volume gets exactly one result, in input order. A probe that raises
    yields UNKNOWN/error and a probe that outlives ``timeout_s`` yields
    UNKNOWN/timeout; neither affects the other volumes. The pool is shut down
    without waiting, so a hung probe thread is abandoned rather than joined.
    Its subprocess is still bounded by the command timeout. Interpreter exit
    still joins abandoned workers, so a probe stuck in an uninterruptible read
    delays process exit until it returns.
    """

    def __init__(
        self,
        prober: HealthProber,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_workers: int | None = None,
    ) -> None:
        self.prober = prober
        self.timeout_s = timeout_s
        self.max_workers = max_workers
        self.logger = logging.getLogger(self.__class__.__name__)

    def collect(self, volumes: list[Volume]) -> list[HealthResult]:
        return asyncio.run(self.collect_async(volumes))

    async def collect_async(self, volumes: list[Volume]) -> list[HealthResult]:
        if not volumes:
            return []
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers or len(volumes),
            thread_name_prefix="diskmon-probe",
        )
        try:
            results = await asyncio.gather(
                *(self._probe_volume(executor, volume) for volume in volumes)
            )
        finally:
            executor.shutdown(wait=False)
        self.logger.debug("Collected health for %d volumes.", len(results))
        return list(results)

    async def _probe_volume(
        self, executor: ThreadPoolExecutor, volume: Volume
    ) -> HealthResult:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(executor, self.prober.probe, volume),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                "Health check for %s timed out after %ss.",
                volume.display_name,
                self.timeout_s,
            )
            return HealthResult.degraded(HealthMethod.TIMEOUT)
        except Exception as exc:
            self.logger.warning(
                "Health check for %s failed: %s", volume.display_name, exc
            )
            return HealthResult.degraded(HealthMethod.ERROR)
