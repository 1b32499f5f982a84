"""
Extension points of the hanging protocol service.

- Custom attributes: computed values usable in matching rules.
- Custom viewport options: callbacks applied to a viewport after it is hung,
  and store callbacks carrying viewport state across display set switches.
- Image-load strategies: named loaders that may rearrange how images of the
  hung display sets are fetched.

Registrations are process-wide configuration and survive a service reset.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .attributes import AttributeResolver, CustomAttribute, default_custom_attributes

logger = logging.getLogger(__name__)


@dataclass
class CustomViewportOption:
    id: str
    name: str
    callback: Optional[Callable] = None
    store: Optional[Callable] = None
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ImageLoadRequest:
    data: Any
    display_sets_match_details: Dict[str, Any]
    match_details: List[Any]


class ImageLoadStrategy(ABC):
    """A named image loading strategy.

    ``load`` returns the loader-defined result, or a falsy value when the
    strategy did not rearrange anything.
    """

    @abstractmethod
    def load(self, request: ImageLoadRequest) -> Any:
        ...


class CallableImageLoadStrategy(ImageLoadStrategy):
    """Adapts a plain function to the `ImageLoadStrategy` interface."""

    def __init__(self, callback: Callable[[ImageLoadRequest], Any]):
        self.callback = callback

    def load(self, request: ImageLoadRequest) -> Any:
        return self.callback(request)


class ExtensionRegistry:

    def __init__(self):
        self.custom_attributes: Dict[str, CustomAttribute] = default_custom_attributes()
        self.custom_viewport_options: List[CustomViewportOption] = []
        self.image_load_strategies: Dict[str, ImageLoadStrategy] = {}
        self.active_image_load_strategy_name: Optional[str] = None

    # ------------------------------------------------------------------
    # Custom attributes
    # ------------------------------------------------------------------

    def add_custom_attribute(
        self,
        attribute_id: str,
        attribute_name: str,
        callback: Callable[[Any, Optional[Dict[str, Any]]], Any],
        options: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Register a computed attribute usable in matching rules.

        A later registration under the same id replaces the earlier one.

        Args:
            attribute_id (str): Name used by rules (e.g. 'timepointType').
            attribute_name (str): Display name (e.g. 'Timepoint Type').
            callback (Callable): Called with ``(subject, context)`` to compute the value.
            options (Optional[Dict[str, Any]]): Extra settings kept with the attribute.
        """
        if not callable(callback):
            logger.warning(f"Custom attribute '{attribute_id}' ignored: callback is not callable")
            return
        self.custom_attributes[attribute_id] = CustomAttribute(
            id=attribute_id,
            name=attribute_name,
            callback=callback,
            options=dict(options or {}),
        )

    def get_attribute_resolver(self) -> AttributeResolver:
        return AttributeResolver(self.custom_attributes)

    # ------------------------------------------------------------------
    # Custom viewport options
    # ------------------------------------------------------------------

    def add_custom_viewport_option(
        self,
        option_id: str,
        name: str,
        callback: Optional[Callable] = None,
        store: Optional[Callable] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Register a custom viewport setting. Several settings may share an id;
        all of them are applied.

        Args:
            option_id (str): Id referenced from ``viewportOptions.customViewportOptions``.
            name (str): Display name of the setting.
            callback (Optional[Callable]): ``callback(id, value, viewport, *args)``, run after a
                viewport is hung.
            store (Optional[Callable]): ``store(viewport_options, prior_viewport_options, *args)``,
                run when a viewport switches display set or image.
            options (Optional[Dict[str, Any]]): Extra settings kept with the option.
        """
        self.custom_viewport_options.append(CustomViewportOption(
            id=option_id,
            name=name,
            callback=callback,
            store=store,
            options=dict(options or {}),
        ))

    def apply_custom_viewport_option(self, option_id: str, value: Any, viewport: Any, *args) -> int:
        call_count = 0
        for setting in self.custom_viewport_options:
            # store-only settings have no callback
            if setting.id != option_id or not setting.callback:
                continue
            setting.callback(option_id, value, viewport, *args)
            call_count += 1
        if call_count == 0:
            logger.warning(f"No custom viewport setting found for '{option_id}'")
        return call_count

    def apply_custom_viewport_options(self, viewport_options: Dict[str, Any], viewport: Any, *args) -> None:
        """Apply every entry of ``viewport_options['customViewportOptions']`` to a viewport."""
        custom_viewport_options = (viewport_options or {}).get("customViewportOptions")
        if not custom_viewport_options:
            return
        for option_id, value in custom_viewport_options.items():
            self.apply_custom_viewport_option(option_id, value, viewport, *args)

    def apply_custom_viewport_store(
        self,
        viewport_options: Dict[str, Any],
        prior_viewport_options: Optional[Dict[str, Any]],
        *args
    ) -> None:
        """
        Carry viewport state forward by calling every store callback.

        Args:
            viewport_options (Dict[str, Any]): The new options; store callbacks modify it.
            prior_viewport_options (Optional[Dict[str, Any]]): The previous options. Nothing
                happens when there are none.
        """
        if not prior_viewport_options:
            return
        for setting in self.custom_viewport_options:
            if not setting.store:
                continue
            setting.store(viewport_options, prior_viewport_options, *args)

    # ------------------------------------------------------------------
    # Image-load strategies
    # ------------------------------------------------------------------

    def register_image_load_strategy(self, name: str, strategy: Any) -> bool:
        """
        Register a named image-load strategy.

        Args:
            name (str): Strategy name, referenced by a protocol's ``imageLoadStrategy``.
            strategy (Any): An `ImageLoadStrategy` or a callable taking an `ImageLoadRequest`.

        Returns:
            bool: True if registered; False (with a warning) when the name is empty or the
                strategy is not usable.
        """
        if not name:
            logger.warning("Image load strategy ignored: a name is required")
            return False
        if isinstance(strategy, ImageLoadStrategy):
            self.image_load_strategies[name] = strategy
        elif callable(strategy):
            self.image_load_strategies[name] = CallableImageLoadStrategy(strategy)
        else:
            logger.warning(f"Image load strategy '{name}' ignored: strategy is not callable")
            return False
        return True

    def set_active_image_load_strategy(self, name: Optional[str]) -> bool:
        if name is None:
            self.active_image_load_strategy_name = None
            return True
        if name not in self.image_load_strategies:
            logger.warning(f"Image load strategy '{name}' is not registered")
            return False
        self.active_image_load_strategy_name = name
        return True

    def get_active_image_load_strategy(self) -> Optional[ImageLoadStrategy]:
        if self.active_image_load_strategy_name is None:
            return None
        return self.image_load_strategies.get(self.active_image_load_strategy_name)

    def has_active_image_load_strategy(self) -> bool:
        return self.get_active_image_load_strategy() is not None
