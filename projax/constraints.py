"""Affine constraints on degrees of freedom.

A constraint line fixes one DoF as a linear combination of other DoFs plus a
constant::

    x_i = sum_j c_ij x_j + b_i

Lines are added incrementally by several passes (boundary values, flux
constraints, user supplied hanging-node lines). The first pass that
constrains a DoF wins; later attempts on the same DoF are ignored. Before a
constraint set is applied to a linear system it is closed: chains such as
``x_1 = x_2, x_2 = x_3`` are resolved so that no right-hand side refers to a
constrained DoF.

Example:
    >>> constraints = AffineConstraints()
    >>> constraints.add_line(0, inhomogeneity=1.)
    True
    >>> constraints.add_line(0, inhomogeneity=2.)
    False
    >>> constraints.get_inhomogeneity(0)
    1.0
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

import numpy as onp
import scipy.sparse

from projax.fem import logger


@dataclass
class ConstraintLine:
    index: int
    entries: List[Tuple[int, float]] = field(default_factory=list)
    inhomogeneity: float = 0.


class AffineConstraints:
    """An append-only set of affine constraint lines with first-writer-wins merging."""

    def __init__(self):
        self._lines: Dict[int, ConstraintLine] = {}
        self.closed = False

    def __len__(self):
        return len(self._lines)

    def __contains__(self, dof):
        return int(dof) in self._lines

    def __iter__(self):
        for dof in sorted(self._lines):
            yield self._lines[dof]

    def add_line(self, dof, entries: Iterable[Tuple[int, float]] = (), inhomogeneity=0.):
        """Constrain ``dof`` unless it is already constrained.

        Args:
            dof (int): The constrained DoF.
            entries: (other DoF, coefficient) pairs.
            inhomogeneity (float): Constant part.

        Returns:
            bool: True if the line was inserted, False if ``dof`` was already
            present and the existing line was kept.
        """
        dof = int(dof)
        if dof in self._lines:
            return False
        self._lines[dof] = ConstraintLine(
            dof, [(int(j), float(c)) for j, c in entries], float(inhomogeneity))
        self.closed = False
        return True

    def add_boundary_values(self, boundary_values: Dict[int, float]):
        """Insert pure Dirichlet lines ``x_i = b_i``; returns the number inserted."""
        inserted = 0
        for dof in sorted(boundary_values):
            inserted += self.add_line(dof, (), boundary_values[dof])
        return inserted

    def merge(self, other):
        """Insert all lines of ``other`` that do not clash with existing ones."""
        inserted = 0
        for line in other:
            inserted += self.add_line(line.index, line.entries, line.inhomogeneity)
        return inserted

    def copy(self):
        result = AffineConstraints()
        result.merge(self)
        result.closed = self.closed
        return result

    def is_constrained(self, dof):
        return int(dof) in self._lines

    def is_inhomogeneously_constrained(self, dof):
        dof = int(dof)
        return dof in self._lines and self._lines[dof].inhomogeneity != 0.

    def get_constraint_entries(self, dof):
        return list(self._lines[int(dof)].entries)

    def get_inhomogeneity(self, dof):
        return self._lines[int(dof)].inhomogeneity

    @property
    def constrained_dofs(self):
        return onp.array(sorted(self._lines), dtype=onp.int64)

    def boundary_values(self):
        """Lines without entries, as a ``{dof: value}`` dict."""
        return {dof: line.inhomogeneity for dof, line in sorted(self._lines.items())
                if not line.entries}

    def close(self):
        """Resolve chains so that no entry refers to a constrained DoF.

        Raises:
            ValueError: If the lines form a cycle.
        """
        resolved = {}

        def resolve(dof, visiting):
            if dof in resolved:
                return resolved[dof]
            if dof in visiting:
                raise ValueError(f"Cyclic constraints involving DoF {dof}")
            visiting.add(dof)
            line = self._lines[dof]
            entries = defaultdict(float)
            inhomogeneity = line.inhomogeneity
            for j, c in line.entries:
                if j in self._lines:
                    sub_entries, sub_inhomogeneity = resolve(j, visiting)
                    for jj, cc in sub_entries:
                        entries[jj] += c * cc
                    inhomogeneity += c * sub_inhomogeneity
                else:
                    entries[j] += c
            visiting.discard(dof)
            resolved[dof] = ([(j, c) for j, c in sorted(entries.items()) if c != 0.],
                             inhomogeneity)
            return resolved[dof]

        for dof in sorted(self._lines):
            entries, inhomogeneity = resolve(dof, set())
            self._lines[dof] = ConstraintLine(dof, entries, inhomogeneity)
        self.closed = True
        logger.debug(f"Closed constraint set with {len(self._lines)} lines")

    def _check_closed(self):
        if not self.closed:
            raise ValueError("Constraint set must be closed before it is applied")

    def distribute(self, vector):
        """Set every constrained entry of ``vector`` from its line (in place)."""
        self._check_closed()
        for dof, line in self._lines.items():
            vector[dof] = sum(c * vector[j] for j, c in line.entries) + line.inhomogeneity
        return vector

    def set_zero(self, vector):
        vector[self.constrained_dofs] = 0.
        return vector

    def prolongation(self, n_dofs):
        """Matrix ``P`` and offset ``k`` with ``x = P y + k`` over the free DoFs ``y``.

        Returns:
            tuple: ``(P, k)``, a CSR array of shape (n_dofs, num_free) and a
            vector of length n_dofs.
        """
        if not self.closed:
            self.close()
        constrained = onp.zeros(n_dofs, dtype=bool)
        if self._lines:
            dofs = self.constrained_dofs
            if dofs.max() >= n_dofs:
                raise ValueError(f"Constraint on DoF {dofs.max()} outside a space of {n_dofs} DoFs")
            constrained[dofs] = True
        free = onp.flatnonzero(~constrained)
        column = -onp.ones(n_dofs, dtype=onp.int64)
        column[free] = onp.arange(len(free))

        rows, cols, vals = [free], [column[free]], [onp.ones(len(free))]
        k = onp.zeros(n_dofs)
        for dof, line in self._lines.items():
            if line.entries:
                entry_dofs = onp.array([j for j, _ in line.entries], dtype=onp.int64)
                rows.append(onp.full(len(entry_dofs), dof))
                cols.append(column[entry_dofs])
                vals.append(onp.array([c for _, c in line.entries]))
            k[dof] = line.inhomogeneity
        P = scipy.sparse.csr_array(
            (onp.concatenate(vals), (onp.concatenate(rows), onp.concatenate(cols))),
            shape=(n_dofs, len(free)))
        return P, k
