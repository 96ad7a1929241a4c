from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Union

from .spec import ConfigLayer, EffectiveConfig, StateNode

LayerLike = Union[ConfigLayer, Mapping[str, Any], None]


def _as_layer(layer: LayerLike) -> Optional[ConfigLayer]:
    if layer is None or isinstance(layer, ConfigLayer):
        return layer
    return ConfigLayer.model_validate(dict(layer))


def layer_fields(layer: LayerLike) -> Dict[str, Any]:
    """Fields a layer explicitly sets. None counts as unset."""
    parsed = _as_layer(layer)
    if parsed is None:
        return {}
    return parsed.model_dump(exclude_unset=True, exclude_none=True)


def resolve(
    global_layer: LayerLike,
    agent_layer: LayerLike,
    state_chain: Iterable[Union[StateNode, LayerLike]],
    skill_layer: LayerLike,
    turn_overrides: LayerLike,
) -> EffectiveConfig:
    """
    Merge configuration layers into one EffectiveConfig.

    Layers apply in fixed order: global, agent, each state root-to-leaf,
    skill, turn. A narrower layer's set field always wins; unset fields
    inherit. Pure: the same inputs always give the same result.
    """
    merged: Dict[str, Any] = {}
    merged.update(layer_fields(global_layer))
    merged.update(layer_fields(agent_layer))
    for item in state_chain:
        layer = item.config if isinstance(item, StateNode) else item
        merged.update(layer_fields(layer))
    merged.update(layer_fields(skill_layer))
    merged.update(layer_fields(turn_overrides))
    return EffectiveConfig(**merged)
