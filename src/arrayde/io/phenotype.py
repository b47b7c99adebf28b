"""
Group assignment from free-text sample metadata.

Public microarray series describe samples in free text ("Tumor, subtype A,
patient 12", "normal adjacent tissue"). Group labels are derived with an
explicit, externally supplied rule table rather than per-study code:

    rules = [
        GroupRule("subtype A", "case_A"),
        GroupRule("subtype B", "case_B"),
        GroupRule(r"normal|healthy", "control", regex=True),
    ]

Rules are evaluated in order and the first match wins; a sample matching no
rule receives the default label, or fails with UnassignedSampleError when no
default is configured. Precedence for text matching several rules is
therefore the rule order chosen by the analyst.

Example:
    >>> import pandas as pd
    >>> from arrayde.io.phenotype import GroupAssigner, GroupRule
    >>>
    >>> metadata = pd.DataFrame(
    ...     {"title": ["tumor subtype A rep1", "normal tissue rep1"]},
    ...     index=["GSM1", "GSM2"],
    ... )
    >>> assigner = GroupAssigner([GroupRule("subtype A", "case_A"),
    ...                           GroupRule("normal", "control")])
    >>> assigner.assign(metadata)
    GSM1     case_A
    GSM2    control
    Name: group, dtype: object
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import pandas as pd

from arrayde.exceptions import UnassignedSampleError

logger = logging.getLogger(__name__)

__all__ = ['GroupRule', 'GroupAssigner']

DEFAULT_SOURCE = 'default'


@dataclass(frozen=True)
class GroupRule:
    """One (pattern -> label) rule.

    Attributes:
        pattern: Substring, or regular expression when ``regex`` is True
        label: Group label assigned on match
        regex: Interpret ``pattern`` as a regular expression
        case_sensitive: Match case exactly (default: case-insensitive)
    """

    pattern: str
    label: str
    regex: bool = False
    case_sensitive: bool = False

    def __post_init__(self):
        if not self.label:
            raise ValueError(f"Rule for pattern {self.pattern!r} has an empty label")
        if self.regex:
            # Surface invalid expressions when the rule table is built
            re.compile(self.pattern)

    def matches(self, text: str) -> bool:
        if self.regex:
            flags = 0 if self.case_sensitive else re.IGNORECASE
            return re.search(self.pattern, text, flags) is not None
        if self.case_sensitive:
            return self.pattern in text
        return self.pattern.lower() in text.lower()

    @classmethod
    def from_dict(cls, spec: Mapping[str, Any]) -> GroupRule:
        """Build from a config mapping ``{pattern, label, regex?, case_sensitive?}``."""
        try:
            return cls(
                pattern=str(spec['pattern']),
                label=str(spec['label']),
                regex=bool(spec.get('regex', False)),
                case_sensitive=bool(spec.get('case_sensitive', False)),
            )
        except KeyError as e:
            raise ValueError(f"Group rule is missing required key {e}: {dict(spec)}") from e


def _as_list(value: Any) -> list[str]:
    """A single YAML scalar or a list of them, as a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class GroupAssigner:
    """
    Maps each sample to exactly one group label using an ordered rule table.

    Args:
        rules: Ordered rules; first match wins
        default: Label for samples matching no rule (None = such samples fail)
        fields: Metadata columns whose text is searched (joined with spaces).
            None searches every column.
        exclude_labels: Labels whose samples are dropped from the analysis
            (e.g. "exclude" for samples outside the comparison)
    """

    def __init__(
        self,
        rules: Sequence[GroupRule],
        default: Optional[str] = None,
        fields: Optional[Sequence[str]] = None,
        exclude_labels: Sequence[str] = (),
    ):
        self.rules = list(rules)
        self.default = default
        self.fields = _as_list(fields) if fields is not None else None
        self.exclude_labels = set(_as_list(exclude_labels))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> GroupAssigner:
        """
        Build from the ``groups`` config section::

            groups:
              fields: [title, characteristics_ch1]
              default: other
              exclude: [other]
              rules:
                - {pattern: "subtype A", label: case_A}
                - {pattern: "normal|healthy", label: control, regex: true}
        """
        rules = [GroupRule.from_dict(r) for r in config.get('rules', [])]
        return cls(
            rules=rules,
            default=config.get('default'),
            fields=_as_list(config.get('fields') or config.get('field')) or None,
            exclude_labels=_as_list(config.get('exclude')),
        )

    def _sample_text(self, metadata: pd.DataFrame) -> pd.Series:
        if self.fields is None:
            columns = list(metadata.columns)
        else:
            missing = [f for f in self.fields if f not in metadata.columns]
            if missing:
                raise UnassignedSampleError(
                    f"Metadata fields not found: {missing}",
                    stage='group_assignment',
                    identifier=str(missing[0]),
                )
            columns = self.fields
        if not columns:
            return pd.Series('', index=metadata.index)
        return metadata[columns].fillna('').astype(str).agg(' '.join, axis=1)

    def _match(self, text: str) -> tuple[Optional[str], Any]:
        for i, rule in enumerate(self.rules):
            if rule.matches(text):
                return rule.label, i
        if self.default is not None:
            return self.default, DEFAULT_SOURCE
        return None, None

    def provenance(self, metadata: pd.DataFrame) -> pd.DataFrame:
        """
        Label and matching rule per sample.

        Returns:
            DataFrame indexed by sample with columns ``group`` and ``source``
            (rule index, or 'default')

        Raises:
            UnassignedSampleError: Empty rule table without default, or any
                sample left without a label
        """
        if not self.rules and self.default is None:
            raise UnassignedSampleError(
                "Group rule table is empty and no default label is set",
                stage='group_assignment',
            )

        text = self._sample_text(metadata)
        rows = [self._match(t) for t in text]
        result = pd.DataFrame(
            {
                'group': [label for label, _ in rows],
                'source': [source for _, source in rows],
            },
            index=metadata.index,
        )

        unassigned = result.index[result['group'].isna()]
        if len(unassigned) > 0:
            raise UnassignedSampleError(
                f"{len(unassigned)} samples matched no group rule and no default label is set",
                stage='group_assignment',
                identifier=str(unassigned[0]),
                details={'unassigned': [str(s) for s in unassigned]},
            )
        return result

    def assign(self, metadata: pd.DataFrame) -> pd.Series:
        """
        One label per sample, in metadata row order.

        Raises:
            UnassignedSampleError: See ``provenance``
        """
        labels = self.provenance(metadata)['group'].astype(object)
        labels.name = 'group'

        counts = labels.value_counts()
        logger.info(
            "Assigned groups: " + ", ".join(f"{g}={n}" for g, n in counts.items())
        )
        return labels

    def included(self, labels: pd.Series) -> pd.Series:
        """Boolean mask of samples whose label is not excluded."""
        return ~labels.isin(self.exclude_labels)
