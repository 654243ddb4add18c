from typing import Awaitable, Callable, Dict, List, Tuple

Runner = Callable[..., Awaitable[Dict]]

_ANOMALIES: Dict[str, Tuple[Runner, str]] = dict()


def register(anomaly_key: str, runner: Runner, description: str | None = None) -> None:
    if anomaly_key in _ANOMALIES:
        raise ValueError(f"Anomaly {anomaly_key} already registered")

    if description:
        description = description.strip()

    _ANOMALIES[anomaly_key] = (runner, description or "")


def resolve(anomaly_key: str) -> Tuple[Runner, str]:
    anomaly = _ANOMALIES.get(anomaly_key, None)
    if anomaly is None:
        raise ValueError(f"Unknown anomaly: {anomaly_key}.")

    return anomaly


def get_registered() -> List[str]:
    return list(_ANOMALIES.keys())
