"""
Group-means design matrix and contrast construction.

The design is the cell-means parameterization: one 0/1 indicator column per
group, no intercept. Every sample belongs to exactly one group, so every row
sums to 1, and each fitted coefficient is a group mean. A contrast is then a
linear combination of group means whose coefficients sum to zero:

    X = [control | case_A | case_B]          c = [-1, 1, 0]  (case_A - control)

Contrasts are written as expressions over group labels:

    "case_A-control"                 simple difference, named "case_A-control"
    "A_vs_ctrl=case_A-control"       named
    "(case_A+case_B)/2-control"      average of two groups against control
    "2*case_A-case_B-control"        weighted

Labels may contain characters that are also operators (e.g. "case-subtype-A");
when the group names are known they are matched longest-first, so such labels
parse as single terms.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from arrayde.exceptions import (
    RankDeficientDesignError,
    UnassignedSampleError,
    UnknownGroupError,
)

logger = logging.getLogger(__name__)

__all__ = [
    'Contrast',
    'GroupDesign',
    'parse_contrast',
    'build_group_design',
]

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
_NUMBER = re.compile(r"\d+(?:\.\d*)?(?:[eE][-+]?\d+)?|\.\d+(?:[eE][-+]?\d+)?")
_ZERO_SUM_TOL = 1e-9


@dataclass(frozen=True)
class Contrast:
    """A named linear combination of group means.

    Attributes:
        name: Contrast label used in the output table
        coefficients: Group label -> coefficient (nonzero entries only)
    """

    name: str
    coefficients: Mapping[str, float]

    def __post_init__(self):
        if not self.coefficients:
            raise ValueError(f"Contrast {self.name!r} references no groups")
        total = sum(self.coefficients.values())
        if abs(total) > _ZERO_SUM_TOL:
            raise ValueError(
                f"Contrast {self.name!r} coefficients must sum to zero, got {total:g}"
            )

    @property
    def groups(self) -> list[str]:
        return list(self.coefficients)

    def vector(self, groups: Sequence[str]) -> NDArray[np.float64]:
        """
        Coefficient vector aligned to design columns.

        Raises:
            UnknownGroupError: A referenced group is not a design column
        """
        index = {g: i for i, g in enumerate(groups)}
        unknown = [g for g in self.coefficients if g not in index]
        if unknown:
            raise UnknownGroupError(
                f"Contrast {self.name!r} references unknown group {unknown[0]!r}; "
                f"design groups are {list(groups)}",
                stage='design',
                identifier=unknown[0],
            )
        vec = np.zeros(len(groups))
        for group, coef in self.coefficients.items():
            vec[index[group]] = coef
        return vec

    def __str__(self) -> str:
        return self.name


class _ContrastParser:
    """Recursive-descent parser for linear contrast expressions.

    Values are pairs (constant, {group: coefficient}); products and quotients
    are only allowed where one side is a constant, keeping the result linear.
    """

    def __init__(self, text: str, groups: Optional[Sequence[str]]):
        self.text = text
        self.groups = sorted(groups, key=len, reverse=True) if groups else None
        self.tokens = self._tokenize()
        self.pos = 0

    def _tokenize(self) -> list[tuple[str, object]]:
        tokens = []
        i = 0
        text = self.text
        while i < len(text):
            ch = text[i]
            if ch.isspace():
                i += 1
                continue
            if self.groups is not None:
                matched = next((g for g in self.groups if text.startswith(g, i)), None)
                word = _IDENTIFIER.match(text, i)
                if matched is not None and (word is None or len(word.group()) <= len(matched)):
                    tokens.append(('group', matched))
                    i += len(matched)
                    continue
            if ch in '+-*/()':
                tokens.append(('op', ch))
                i += 1
                continue
            m = _NUMBER.match(text, i)
            if m:
                tokens.append(('num', float(m.group())))
                i = m.end()
                continue
            m = _IDENTIFIER.match(text, i)
            if m:
                if self.groups is not None:
                    raise UnknownGroupError(
                        f"Contrast {self.text!r} references unknown group {m.group()!r}",
                        stage='design',
                        identifier=m.group(),
                    )
                tokens.append(('group', m.group()))
                i = m.end()
                continue
            raise ValueError(f"Unexpected character {ch!r} in contrast {self.text!r}")
        return tokens

    def _peek(self) -> Optional[tuple[str, object]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> tuple[str, object]:
        token = self._peek()
        if token is None:
            raise ValueError(f"Unexpected end of contrast {self.text!r}")
        self.pos += 1
        return token

    def parse(self) -> dict[str, float]:
        if not self.tokens:
            raise ValueError("Empty contrast expression")
        const, terms = self._expr()
        if self._peek() is not None:
            raise ValueError(f"Unexpected token {self._peek()[1]!r} in contrast {self.text!r}")
        if const != 0:
            raise ValueError(f"Contrast {self.text!r} has a constant term")
        return {g: c for g, c in terms.items() if c != 0}

    def _expr(self):
        const, terms = self._term()
        while self._peek() in (('op', '+'), ('op', '-')):
            sign = 1.0 if self._take()[1] == '+' else -1.0
            c2, t2 = self._term()
            const += sign * c2
            for g, c in t2.items():
                terms[g] = terms.get(g, 0.0) + sign * c
        return const, terms

    def _term(self):
        const, terms = self._factor()
        while self._peek() in (('op', '*'), ('op', '/')):
            op = self._take()[1]
            c2, t2 = self._factor()
            if op == '/':
                if t2 or c2 == 0:
                    raise ValueError(f"Contrast {self.text!r} divides by a group or zero")
                const, terms = const / c2, {g: c / c2 for g, c in terms.items()}
            elif terms and t2:
                raise ValueError(f"Contrast {self.text!r} multiplies two groups")
            elif t2:
                const, terms = 0.0, {g: c * const for g, c in t2.items()}
            else:
                const, terms = const * c2, {g: c * c2 for g, c in terms.items()}
        return const, terms

    def _factor(self):
        kind, value = self._take()
        if kind == 'op' and value in '+-':
            const, terms = self._factor()
            if value == '-':
                return -const, {g: -c for g, c in terms.items()}
            return const, terms
        if kind == 'op' and value == '(':
            result = self._expr()
            if self._take() != ('op', ')'):
                raise ValueError(f"Unbalanced parentheses in contrast {self.text!r}")
            return result
        if kind == 'num':
            return float(value), {}
        if kind == 'group':
            return 0.0, {str(value): 1.0}
        raise ValueError(f"Unexpected token {value!r} in contrast {self.text!r}")


def parse_contrast(spec: str | Contrast, groups: Optional[Sequence[str]] = None) -> Contrast:
    """
    Parse ``"[name=]expression"`` into a Contrast.

    Args:
        spec: Contrast string (or an existing Contrast, returned after
            validation against ``groups``)
        groups: Known group labels. When given, labels are matched
            longest-first and any other identifier raises UnknownGroupError.

    Raises:
        ValueError: Malformed expression, or coefficients not summing to zero
        UnknownGroupError: Reference to a group not in ``groups``
    """
    if isinstance(spec, Contrast):
        if groups is not None:
            spec.vector(groups)
        return spec

    text = spec.strip()
    name = None
    if '=' in text:
        name, text = (part.strip() for part in text.split('=', 1))
        if not name:
            raise ValueError(f"Empty contrast name in {spec!r}")

    coefficients = _ContrastParser(text, groups).parse()
    return Contrast(name=name or re.sub(r"\s+", "", text), coefficients=coefficients)


@dataclass(frozen=True)
class GroupDesign:
    """Cell-means design for one analysis.

    Attributes:
        matrix: Samples × groups 0/1 indicator DataFrame (rows in sample order,
            columns in group order)
    """

    matrix: pd.DataFrame

    @property
    def groups(self) -> list[str]:
        return [str(c) for c in self.matrix.columns]

    @property
    def sample_ids(self) -> pd.Index:
        return self.matrix.index

    @property
    def values(self) -> NDArray[np.float64]:
        return self.matrix.to_numpy(dtype=np.float64)

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.values))

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.rank

    def group_sizes(self) -> pd.Series:
        return self.matrix.sum(axis=0).astype(int)

    def resolve(self, contrasts: Iterable[str | Contrast]) -> list[Contrast]:
        """
        Parse and validate contrasts against the design's groups.

        Raises:
            UnknownGroupError: Any contrast references a group not in the design
            ValueError: Malformed contrast or duplicate contrast names
        """
        resolved = [parse_contrast(c, self.groups) for c in contrasts]
        names = [c.name for c in resolved]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ValueError(f"Duplicate contrast names: {duplicated}")
        return resolved

    def contrast_matrix(self, contrasts: Iterable[str | Contrast]) -> pd.DataFrame:
        """Groups × contrasts coefficient matrix."""
        resolved = self.resolve(contrasts)
        return pd.DataFrame(
            np.column_stack([c.vector(self.groups) for c in resolved]) if resolved
            else np.zeros((len(self.groups), 0)),
            index=self.groups,
            columns=[c.name for c in resolved],
        )

    def check_estimable(self, contrast: Contrast) -> None:
        """
        Raise if the contrast is not a linear function of estimable parameters.

        A contrast c is estimable when it lies in the row space of X, i.e.
        X⁺X c = c.

        Raises:
            RankDeficientDesignError: The design cannot resolve the contrast
        """
        X = self.values
        c = contrast.vector(self.groups)
        projected = np.linalg.pinv(X) @ X @ c
        if not np.allclose(projected, c, atol=1e-8):
            empty = [g for g, n in self.group_sizes().items() if n == 0 and contrast.coefficients.get(g)]
            reason = f"; groups without samples: {empty}" if empty else ""
            raise RankDeficientDesignError(
                f"Contrast {contrast.name!r} is not estimable from the design "
                f"(rank {self.rank} for {len(self.groups)} groups){reason}",
                stage='differential_expression',
                identifier=contrast.name,
            )


def build_group_design(
    labels: pd.Series,
    groups: Optional[Sequence[str]] = None,
) -> GroupDesign:
    """
    Build the indicator design matrix from per-sample group labels.

    Args:
        labels: One label per sample, indexed by sample id, in matrix column order
        groups: Column order. Defaults to order of first appearance in
            ``labels``. Groups listed here with no samples become all-zero
            columns (contrasts touching them are not estimable).

    Raises:
        UnassignedSampleError: A sample has no label
        UnknownGroupError: A label is not among the given ``groups``
    """
    if labels.isna().any():
        missing = labels.index[labels.isna()]
        raise UnassignedSampleError(
            f"{len(missing)} samples have no group label",
            stage='design',
            identifier=str(missing[0]),
        )

    labels = labels.astype(str)
    if groups is None:
        groups = list(pd.unique(labels))
    else:
        groups = [str(g) for g in groups]
        unknown = sorted(set(labels) - set(groups))
        if unknown:
            raise UnknownGroupError(
                f"Sample labels not among design groups: {unknown}",
                stage='design',
                identifier=unknown[0],
            )

    indicators = np.zeros((len(labels), len(groups)))
    column = {g: i for i, g in enumerate(groups)}
    indicators[np.arange(len(labels)), [column[label] for label in labels]] = 1.0

    design = GroupDesign(pd.DataFrame(indicators, index=labels.index, columns=groups))
    logger.info(
        f"Design: {design.n_samples} samples × {len(groups)} groups "
        f"({', '.join(f'{g}={n}' for g, n in design.group_sizes().items())}); "
        f"rank {design.rank}, residual df {design.df_residual}"
    )
    return design
