"""
Gap editing.

Opening and closing gaps in the numbering is done with two bulk UPDATEs,
one per column, so the cost depends on the number of rows to the right of
the gap and not on the size of the tree.
"""

import logging

from django.db.models import F

logger = logging.getLogger(__name__)

OPERATORS = ('gte', 'gt')


def widen(queryset, by, at, op='gte'):
    """
    Shifts every ``lft`` and ``rgt`` that compares ``op`` to ``at`` by
    ``by`` slots.

    Both columns are checked independently: ancestors that straddle the
    position only get their ``rgt`` moved, so they grow around the gap.

    :param queryset: the nodes of the tree being edited
    :param by: width of the gap, negative values close a gap
    :param at: position where the gap is opened
    :param op: ``gte`` or ``gt``, the comparison used against ``at``
    """
    if op not in OPERATORS:
        raise ValueError('Invalid gap operator: %s' % (op, ))
    logger.debug('Shifting %s bounds %s %d by %d',
                 queryset.model._meta.label, op, at, by)
    queryset.filter(**{'rgt__%s' % op: at}).update(rgt=F('rgt') + by)
    queryset.filter(**{'lft__%s' % op: at}).update(lft=F('lft') + by)


def narrow(queryset, at, by):
    """
    Closes a gap of ``by`` slots left at position ``at``.

    The position itself isn't shifted.
    """
    widen(queryset, -by, at, 'gt')


def relocate(queryset, lft, rgt, offset):
    """
    Shifts the branch whose root spans ``lft``..``rgt`` by ``offset`` slots.

    Every node of the branch has its ``rgt`` inside that range, and no other
    node does, so a single UPDATE moves the whole block.
    """
    logger.debug('Relocating %s branch %d..%d by %d',
                 queryset.model._meta.label, lft, rgt, offset)
    queryset.filter(rgt__range=(lft, rgt)).update(lft=F('lft') + offset,
                                                  rgt=F('rgt') + offset)
