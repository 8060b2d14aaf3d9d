"""Context-aware UI element resolution.

Pages register a `ModeSpecificElementConfig` per logical element once; test
code then asks for a selector by name and mode. Resolution never raises:
unregistered names fall through to the caller's selector, registered ones
walk `mode selector -> fallback selector -> base selector`.

The resolver never touches a browser. Visibility checks go through an
injected `ElementProbe`.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import anyio

from dualmode.config import EngineConfig, get_config
from dualmode.models.element_config import ElementPredicate, LookupStrategy, ModeSpecificElementConfig
from dualmode.models.reports import ElementFailure, ElementValidationReport
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)


class ElementProbe(Protocol):
    async def is_visible(self, selector: str, timeout: float) -> bool:
        ...


class ElementRegistry:
    """Typed registry: element name -> configuration."""

    def __init__(self, configs: Iterable[ModeSpecificElementConfig] = ()) -> None:
        self._configs: Dict[str, ModeSpecificElementConfig] = {}
        for config in configs:
            self.register(config)

    def register(self, config: ModeSpecificElementConfig) -> None:
        if config.element_name in self._configs:
            raise ValueError(f"element '{config.element_name}' is already registered")
        self._configs[config.element_name] = config

    def get(self, element_name: str) -> Optional[ModeSpecificElementConfig]:
        return self._configs.get(element_name)

    def __contains__(self, element_name: object) -> bool:
        return element_name in self._configs

    def __iter__(self) -> Iterator[ModeSpecificElementConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    def names(self) -> List[str]:
        return list(self._configs)


def _mode_selector(config: ModeSpecificElementConfig, mode: TestMode) -> Optional[str]:
    if mode is TestMode.ISOLATED:
        return config.isolated_mode_selector
    if mode is TestMode.PRODUCTION:
        return config.production_mode_selector
    return None


def _mode_predicate(config: ModeSpecificElementConfig, mode: TestMode) -> Optional[ElementPredicate]:
    if mode is TestMode.ISOLATED:
        return config.isolated_validation
    if mode is TestMode.PRODUCTION:
        return config.production_validation
    return None


class ContextAwareElementResolver:
    def __init__(
        self,
        registry: ElementRegistry,
        *,
        config: Optional[EngineConfig] = None,
        probe: Optional[ElementProbe] = None,
    ) -> None:
        self.registry = registry
        self.config = config or get_config()
        self.probe = probe

    def _mode_timing(self, mode: TestMode) -> Tuple[float, int]:
        timeouts = self.config.timeouts
        if mode is TestMode.PRODUCTION:
            return timeouts.element_production, timeouts.retries_production
        return timeouts.element_isolated, timeouts.retries_isolated

    def selector_chain(self, element_name: str, mode: TestMode) -> Tuple[str, ...]:
        """Distinct selectors in resolution order; empty when unregistered."""
        config = self.registry.get(element_name)
        if config is None:
            return ()
        chain: List[str] = []
        for selector in (_mode_selector(config, mode), config.fallback_selector, config.base_selector):
            if selector and selector not in chain:
                chain.append(selector)
        return tuple(chain)

    def resolve(self, element_name: str, mode: TestMode, default_selector: Optional[str] = None) -> str:
        chain = self.selector_chain(element_name, mode)
        if not chain:
            return default_selector if default_selector is not None else element_name
        return chain[0]

    def resolve_strategy(self, element_name: str, mode: TestMode, default_selector: Optional[str] = None) -> LookupStrategy:
        timeout, retries = self._mode_timing(mode)
        config = self.registry.get(element_name)
        if config is None:
            return LookupStrategy(
                element_name=element_name,
                selector=self.resolve(element_name, mode, default_selector),
                timeout=timeout,
                retries=retries,
                registered=False,
            )
        override = config.production_timeout if mode is TestMode.PRODUCTION else config.isolated_timeout
        chain = self.selector_chain(element_name, mode)
        return LookupStrategy(
            element_name=element_name,
            selector=chain[0],
            alternates=chain[1:],
            timeout=override or timeout,
            retries=config.retries if config.retries is not None else retries,
        )

    async def _first_visible(self, probe: ElementProbe, strategy: LookupStrategy, attempted: List[str], errors: List[str]) -> Optional[str]:
        # One pass over the whole chain, repeated `retries` more times
        for _ in range(strategy.retries + 1):
            for selector in strategy.selectors:
                attempted.append(selector)
                visible = False
                with anyio.move_on_after(strategy.timeout):
                    try:
                        visible = await probe.is_visible(selector, strategy.timeout)
                    except Exception as exc:
                        errors.append(f"{strategy.element_name}: probe error for '{selector}': {exc}")
                if visible:
                    return selector
        return None

    async def _run_predicate(self, predicate: ElementPredicate, selector: str, timeout: float) -> Tuple[bool, str]:
        outcome: Optional[bool] = None
        detail = ""
        with anyio.move_on_after(timeout):
            try:
                outcome = bool(await predicate(selector))
            except Exception as exc:
                outcome, detail = False, f"validation raised: {exc}"
        if outcome is None:
            return False, f"validation did not finish within {timeout:g}s"
        return outcome, detail or ("" if outcome else "mode-specific validation returned false")

    async def validate_elements(self, mode: TestMode, probe: Optional[ElementProbe] = None) -> ElementValidationReport:
        """Check required elements are visible and run mode predicates on visible ones."""
        probe = probe or self.probe
        if probe is None:
            raise ValueError("validate_elements needs an ElementProbe")
        attempted: List[str] = []
        successful: List[str] = []
        failures: List[ElementFailure] = []
        errors: List[str] = []
        found = expected = mode_specific = 0

        for config in self.registry:
            strategy = self.resolve_strategy(config.element_name, mode)
            if _mode_selector(config, mode):
                mode_specific += 1
            if config.is_required:
                expected += 1
            visible_selector = await self._first_visible(probe, strategy, attempted, errors)
            if visible_selector is None:
                if config.is_required:
                    failures.append(ElementFailure(element_name=config.element_name, selector=strategy.selector, reason="not visible"))
                continue
            found += 1
            successful.append(visible_selector)
            predicate = _mode_predicate(config, mode)
            if predicate is None:
                continue
            ok, detail = await self._run_predicate(predicate, visible_selector, strategy.timeout)
            if not ok:
                failures.append(ElementFailure(element_name=config.element_name, selector=visible_selector, reason=detail))

        for failure in failures:
            logger.warning(
                "element_validation_failed mode=%s element=%s selector=%s reason=%s",
                mode.value, failure.element_name, failure.selector, failure.reason,
            )
        report = ElementValidationReport(
            mode=mode,
            passed=not failures,
            elements_expected=expected,
            elements_found=found,
            mode_specific_elements=mode_specific,
            selectors_attempted=attempted,
            selectors_successful=successful,
            failures=failures,
            errors=errors,
        )
        logger.info(
            "element_validation mode=%s passed=%s found=%s expected=%s failures=%s",
            mode.value, report.passed, found, expected, len(failures),
        )
        return report


__all__ = ["ElementProbe", "ElementRegistry", "ContextAwareElementResolver"]
