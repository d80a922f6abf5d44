"""
Interval arithmetic for nested sets.

Every node occupies two integer slots, ``lft`` and ``rgt``. These helpers
compute the widths and offsets used when a branch is moved around. They
don't touch the database.
"""


def gap_width(node):
    "Number of slots taken by the node and all of its descendants."
    return node.rgt - node.lft + 1


def distance(node, target):
    "Signed offset that takes the node's ``lft`` to ``target``."
    return target - node.lft


def is_no_op(node, target):
    """
    :returns: ``True`` when moving ``node`` to ``target`` wouldn't change
        anything: the target is the node's own position, the slot right
        after it, or there is no target at all.
    """
    return target is None or target == node.lft or target == node.rgt + 1


def is_into_own_subtree(node, target):
    """
    :returns: ``True`` when ``target`` falls inside the node's own interval,
        which means nesting the node under itself or one of its descendants.
    """
    return node.lft < target <= node.rgt
