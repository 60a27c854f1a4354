"""
Read an exporter page back into per-device values.

Used by the `scrape` and `dump` commands. Parsing is prometheus_client's;
this module only indexes the families and looks samples up by label.
"""

from __future__ import annotations

from typing import Dict, Optional

from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families


def parse_exposition(text: str) -> Dict[str, Metric]:
    """Families keyed by name. Raises ValueError if the page isn't valid exposition text."""
    families: Dict[str, Metric] = {}
    for family in text_string_to_metric_families(text):
        if family.name in families:
            families[family.name].samples.extend(family.samples)
        else:
            families[family.name] = family
    return families


def get_sample(families: Dict[str, Metric], name: str, **labels: str) -> Optional[float]:
    """First sample of `name` whose labels include all of `labels`."""
    family = families.get(name)
    if family is None:
        return None
    for sample in family.samples:
        if all(sample.labels.get(k) == v for k, v in labels.items()):
            return sample.value
    return None


def devices_in(families: Dict[str, Metric]) -> Dict[str, str]:
    """Map device index -> uuid for every device that appears in any family."""
    devices: Dict[str, str] = {}
    for family in families.values():
        for sample in family.samples:
            index = sample.labels.get("device")
            uuid = sample.labels.get("uuid")
            if index is not None and uuid is not None:
                devices.setdefault(index, uuid)
    return dict(sorted(devices.items(), key=lambda item: int(item[0]) if item[0].isdigit() else 0))
