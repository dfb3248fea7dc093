"""Migration dependency graph."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from dnadb.errors import CyclicDependencyError, DependencyError
from dnadb.migration.models import Migration


class DependencyGraph:
    """
    Directed ``depends_on`` edges between known migrations.

    Dependencies naming unknown ids are not edges; they surface as
    :class:`DependencyError` when a batch is validated.
    """

    def __init__(self, migrations: Mapping[str, Migration] | Iterable[Migration]):
        if isinstance(migrations, Mapping):
            self._migrations = dict(migrations)
        else:
            self._migrations = {m.id: m for m in migrations}

    def __len__(self) -> int:
        return len(self._migrations)

    def dependencies(self, migration_id: str) -> list[str]:
        migration = self._migrations.get(migration_id)
        if migration is None:
            return []
        return [dep for dep in migration.dependencies if dep in self._migrations]

    def find_cycle(self, start: Iterable[str] | None = None) -> list[str] | None:
        """Return one cycle as ``[a, b, ..., a]`` or None."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = dict.fromkeys(self._migrations, WHITE)
        roots = list(start) if start is not None else sorted(self._migrations)

        for root in roots:
            if color.get(root, BLACK) != WHITE:
                continue
            path: list[str] = [root]
            stack = [iter(self.dependencies(root))]
            color[root] = GREY
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                elif color[dep] == GREY:
                    return path[path.index(dep) :] + [dep]
                elif color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    stack.append(iter(self.dependencies(dep)))
        return None

    def validate_batch(self, pending: Sequence[Migration], applied: Iterable[str]) -> None:
        """
        Check a version-ordered batch before anything runs.

        Every dependency must be applied already or appear earlier in the
        batch. Raises :class:`CyclicDependencyError` or :class:`DependencyError`.
        """
        cycle = self.find_cycle(m.id for m in pending)
        if cycle:
            raise CyclicDependencyError(cycle)

        satisfied = set(applied)
        for migration in pending:
            for dep in migration.dependencies:
                if dep not in satisfied:
                    raise DependencyError(migration.id, dep, migration.name)
            satisfied.add(migration.id)
