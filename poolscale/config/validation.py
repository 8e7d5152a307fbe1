"""
Validation of pool, trigger and node-class configuration blocks.

Each validator raises :class:`ConfigInvalid` naming the offending item, so the
caller can skip that one item and keep loading the rest.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from poolscale.autoscaling.errors import ConfigInvalid

logger = logging.getLogger(__name__)

TRIGGER_KINDS = ("utilization", "external")


def _require_int(item: str, config: Dict[str, Any], key: str, minimum: int = 0, required: bool = True) -> Optional[int]:
    if key not in config:
        if required:
            raise ConfigInvalid(item, f"missing '{key}'")
        return None
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigInvalid(item, f"'{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigInvalid(item, f"'{key}' must be >= {minimum}, got {value}")
    return value


def _require_positive(item: str, config: Dict[str, Any], key: str, allow_zero: bool = False) -> None:
    if key not in config or config[key] is None:
        return
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigInvalid(item, f"'{key}' must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigInvalid(item, f"'{key}' must be {'>= 0' if allow_zero else '> 0'}, got {value}")


def validate_pool_config(name: str, config: Dict[str, Any], node_classes: Optional[Iterable[str]] = None) -> None:
    """Validate a pool block.

    Args:
        name: Pool name.
        config: Pool configuration.
        node_classes: Names of node classes that loaded successfully.

    Raises:
        ConfigInvalid: If the pool cannot be used.
    """
    item = f"pool {name}"
    if not isinstance(config, dict):
        raise ConfigInvalid(item, "pool configuration must be a mapping")

    min_replicas = _require_int(item, config, "min_replicas")
    max_replicas = _require_int(item, config, "max_replicas", minimum=1)
    if min_replicas > max_replicas:
        raise ConfigInvalid(item, f"min_replicas {min_replicas} > max_replicas {max_replicas}")

    min_available = _require_int(item, config, "min_available", required=False)
    if min_available is not None and min_available > max_replicas:
        raise ConfigInvalid(item, f"min_available {min_available} > max_replicas {max_replicas}")

    node_class = config.get("node_class")
    if node_class is not None and node_classes is not None and node_class not in node_classes:
        raise ConfigInvalid(item, f"unknown node_class {node_class!r}")


def validate_trigger_config(pool_name: str, pool_config: Dict[str, Any], trigger: Dict[str, Any]) -> None:
    """Validate one trigger of a pool.

    Args:
        pool_name: Owning pool name.
        pool_config: Owning pool configuration (already validated).
        trigger: Trigger configuration.

    Raises:
        ConfigInvalid: If the trigger cannot be used.
    """
    trigger_name = trigger.get("name") if isinstance(trigger, dict) else None
    item = f"trigger {pool_name}/{trigger_name or '?'}"
    if not isinstance(trigger, dict) or not trigger_name:
        raise ConfigInvalid(item, "trigger must be a mapping with a 'name'")

    kind = trigger.get("kind")
    if kind not in TRIGGER_KINDS:
        raise ConfigInvalid(item, f"'kind' must be one of {TRIGGER_KINDS}, got {kind!r}")

    if "target" not in trigger:
        raise ConfigInvalid(item, "missing 'target'")
    _require_positive(item, trigger, "target")
    _require_positive(item, trigger, "poll_interval")
    _require_positive(item, trigger, "stabilization_window", allow_zero=True)
    _require_positive(item, trigger, "cooldown_period", allow_zero=True)
    _require_positive(item, trigger, "tolerance", allow_zero=True)

    pool_min = pool_config["min_replicas"]
    pool_max = pool_config["max_replicas"]
    scaler_min = _require_int(item, trigger, "min_replicas", required=False)
    scaler_max = _require_int(item, trigger, "max_replicas", required=False)
    scaler_min = pool_min if scaler_min is None else scaler_min
    scaler_max = pool_max if scaler_max is None else scaler_max

    if scaler_min > scaler_max:
        raise ConfigInvalid(item, f"min_replicas {scaler_min} > max_replicas {scaler_max}")
    if scaler_min < pool_min or scaler_max > pool_max:
        raise ConfigInvalid(
            item, f"bounds [{scaler_min}, {scaler_max}] outside pool bounds [{pool_min}, {pool_max}]"
        )

    source = trigger.get("source", {})
    if not isinstance(source, dict):
        raise ConfigInvalid(item, "'source' must be a mapping")


def validate_node_class_config(name: str, config: Dict[str, Any]) -> None:
    """Validate a node-class block.

    Args:
        name: Node class name.
        config: Node class configuration.

    Raises:
        ConfigInvalid: If the node class cannot be used.
    """
    item = f"node class {name}"
    if not isinstance(config, dict):
        raise ConfigInvalid(item, "node class configuration must be a mapping")

    min_units = _require_int(item, config, "min_units", required=False) or 0
    max_units = _require_int(item, config, "max_units")
    if min_units > max_units:
        raise ConfigInvalid(item, f"min_units {min_units} > max_units {max_units}")

    _require_int(item, config, "slots_per_unit", minimum=1, required=False)
    _require_int(item, config, "max_retries", minimum=1, required=False)
    _require_positive(item, config, "lead_time_estimate", allow_zero=True)
    _require_positive(item, config, "idle_timeout", allow_zero=True)
    _require_positive(item, config, "retry_factor")
    _require_positive(item, config, "backoff_base", allow_zero=True)
    _require_positive(item, config, "backoff_factor")
    _require_positive(item, config, "degraded_recovery", allow_zero=True)


def validate_config(config_data: Dict[str, Any]) -> List[str]:
    """Validate every node class, pool and trigger of a configuration.

    Args:
        config_data: Parsed configuration.

    Returns:
        Error messages, empty if the whole configuration is usable.
    """
    errors = []
    valid_node_classes = []

    for name, node_class_config in (config_data.get("node_classes") or {}).items():
        try:
            validate_node_class_config(name, node_class_config)
            valid_node_classes.append(name)
        except ConfigInvalid as e:
            errors.append(str(e))

    for name, pool_config in (config_data.get("pools") or {}).items():
        try:
            validate_pool_config(name, pool_config, node_classes=valid_node_classes)
        except ConfigInvalid as e:
            errors.append(str(e))
            continue

        for trigger in pool_config.get("triggers") or []:
            try:
                validate_trigger_config(name, pool_config, trigger)
            except ConfigInvalid as e:
                errors.append(str(e))

    for error in errors:
        logger.error(error)
    return errors
