"""Element registry for the application's navigation region.

Isolated builds render `data-testid` hooks; the live deployment relies on
class names, so the two modes prefer different selectors.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from dualmode.logic.element_resolver import ElementRegistry
from dualmode.models.element_config import ElementPredicate, ModeSpecificElementConfig

NAVIGATION_CONTAINER = '[data-testid="main-navigation"], .main-nav, .navbar-nav, .navigation, .nav-menu'
MAIN_NAVIGATION = '.navigation, .main-nav, .navbar-nav, [data-testid="main-navigation"], .nav-menu'
MOBILE_MENU_TOGGLE = '[data-testid="mobile-menu-toggle"]'
SEARCH_INTERFACE = '.search-interface, [data-testid="search-interface"]'


def _min_links(count_links: Callable[[str], Awaitable[int]], minimum: int) -> ElementPredicate:
    async def predicate(selector: str) -> bool:
        return await count_links(selector) >= minimum

    return predicate


def build_navigation_registry(count_links: Optional[Callable[[str], Awaitable[int]]] = None) -> ElementRegistry:
    """Register the navigation elements.

    `count_links(selector)` returns how many links the matched element holds;
    when given, the container must hold at least one link in isolated mode
    and three in production, where the full menu is deployed.
    """
    isolated_check = _min_links(count_links, 1) if count_links else None
    production_check = _min_links(count_links, 3) if count_links else None
    return ElementRegistry(
        [
            ModeSpecificElementConfig(
                element_name="navigationContainer",
                base_selector=NAVIGATION_CONTAINER,
                isolated_mode_selector='[data-testid="main-navigation"], .main-nav, .navbar-nav',
                production_mode_selector='.navigation, .nav-menu, [data-testid="main-navigation"]',
                fallback_selector=".navigation, .main-nav",
                is_required=True,
                isolated_validation=isolated_check,
                production_validation=production_check,
            ),
            ModeSpecificElementConfig(
                element_name="mainNavigation",
                base_selector=MAIN_NAVIGATION,
                isolated_mode_selector=".navigation, .main-nav, .navbar-nav",
                production_mode_selector='.navigation, .main-nav, [data-testid="main-navigation"]',
                fallback_selector=".navigation, .main-nav",
                is_required=True,
            ),
            ModeSpecificElementConfig(
                element_name="mobileMenuToggle",
                base_selector=MOBILE_MENU_TOGGLE,
                isolated_mode_selector='[data-testid="mobile-menu-toggle"], .mobile-menu-toggle',
                production_mode_selector='.mobile-menu-toggle, [data-testid="mobile-menu-toggle"]',
                fallback_selector=".mobile-menu-toggle",
                # only rendered on narrow viewports
                is_required=False,
            ),
            ModeSpecificElementConfig(
                element_name="searchInterface",
                base_selector=SEARCH_INTERFACE,
                isolated_mode_selector='[data-testid="search-interface"], .search-interface',
                production_mode_selector='.search-interface, [data-testid="search-interface"]',
                fallback_selector=".search-interface",
                is_required=False,
            ),
        ]
    )


__all__ = [
    "NAVIGATION_CONTAINER",
    "MAIN_NAVIGATION",
    "MOBILE_MENU_TOGGLE",
    "SEARCH_INTERFACE",
    "build_navigation_registry",
]
