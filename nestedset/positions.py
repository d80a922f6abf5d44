"""
Move directives and their resolution to a concrete ``lft`` slot.
"""

import enum
from typing import Any, NamedTuple

from nestedset.exceptions import InvalidPosition


class Position(enum.Enum):
    "Where a node should go, relative to itself or to another node."

    HIGHER = 'higher'
    HIGHEST = 'highest'
    LOWER = 'lower'
    LOWEST = 'lowest'
    INDENT = 'indent'
    OUTDENT = 'outdent'
    INTO = 'into'
    ABOVE = 'above'
    BELOW = 'below'
    TO = 'to'

    @property
    def needs_target(self):
        return self in TARGETED


TARGETED = frozenset([Position.INTO, Position.ABOVE, Position.BELOW,
                      Position.TO])


class Directive(NamedTuple):
    """
    A position plus its payload: the reference node for ``INTO``, ``ABOVE``
    and ``BELOW``, or the absolute offset for ``TO``.
    """

    position: Position
    target: Any = None

    @classmethod
    def build(cls, pos, target=None):
        """
        :returns: a :class:`Directive` for ``pos``, which can be a
            :class:`Position` or its string value.

        :raise InvalidPosition: when ``pos`` isn't a known position, or when
            a target is given to a position that doesn't use one
        """
        if isinstance(pos, Directive):
            if target is not None:
                raise InvalidPosition(
                    'A directive already carries its target, got another'
                    ' one: %r' % (target, ))
            return pos
        try:
            position = Position(pos)
        except ValueError:
            raise InvalidPosition('Invalid move position: %s' % (pos, ))
        if target is not None and not position.needs_target:
            raise InvalidPosition(
                "'%s' moves are relative to the node itself and don't take"
                " a target" % (position.value, ))
        return cls(position, target)


def _reference_bounds(node):
    if node.lft is None:
        raise InvalidPosition("Can't move relative to a node that isn't in"
                              " the tree")
    if node.pk is not None:
        node.reload_position()
    return node


def _offset(node, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPosition('Invalid offset: %r' % (value, ))
    upper = node.__class__.get_max_rgt() + 1
    if not 1 <= value <= upper:
        raise InvalidPosition(
            'Offset %d is out of the tree bounds (1..%d)' % (value, upper))
    return value


def resolve(node, directive):
    """
    Turns a directive into the ``lft`` slot the node should be moved to.

    The node's siblings and ancestor are read from the database, so its own
    bounds must be current.

    :returns: the target slot, or ``None`` when the directive can't be
        applied (no sibling in that direction, no ancestor, no reference
        node). ``None`` is not an error, the move just won't happen.
    """
    position, target = directive

    if position is Position.TO:
        if target is None:
            return None
        return _offset(node, target)

    if position in (Position.INTO, Position.ABOVE, Position.BELOW):
        if target is None:
            return None
        target = _reference_bounds(target)
        return {Position.INTO: target.rgt,
                Position.ABOVE: target.lft,
                Position.BELOW: target.rgt + 1}[position]

    if node.lft is None:
        # nodes outside the tree have no siblings or ancestors
        return None

    if position in (Position.HIGHER, Position.INDENT):
        sibling = node.get_prev_sibling()
        if sibling is None:
            return None
        if position is Position.HIGHER:
            return sibling.lft
        return sibling.rgt

    if position is Position.LOWER:
        sibling = node.get_next_sibling()
        if sibling is None:
            return None
        return sibling.rgt + 1

    ancestor = node.get_ancestor()
    if ancestor is None:
        return None
    return {Position.HIGHEST: ancestor.lft + 1,
            Position.LOWEST: ancestor.rgt,
            Position.OUTDENT: ancestor.rgt + 1}[position]
