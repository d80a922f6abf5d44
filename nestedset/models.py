"""

    nestedset.models
    ----------------

    Nested set trees for Django.

    Every node stores a ``lft``/``rgt`` pair: the interval of a node contains
    the intervals of all its descendants and nothing else. Reading the tree
    is a range scan, restructuring it renumbers the nodes to the right of the
    change with bulk UPDATEs inside a transaction.

"""

import contextlib
import logging
import operator
from functools import reduce

from django.core import serializers
from django.db import DatabaseError, connections, models, router, transaction
from django.db.models import F, Max, Q

from nestedset import gaps, intervals
from nestedset.exceptions import (
    NodeAlreadyPlaced,
    RecursiveNesting,
    StorageError,
)
from nestedset.positions import Directive, Position, resolve

logger = logging.getLogger(__name__)


def get_result_class(cls):
    """
    For the given model class, determine what class we should use for the
    nodes returned by its tree methods (such as get_children).

    Usually this will be trivially the same as the initial model class,
    but there are special cases when model inheritance is in use:

    * If the model extends another via multi-table inheritance, we need to
      use whichever ancestor originally implemented the tree behaviour (i.e.
      the one which defines the 'lft'/'rgt' fields). We can't use the
      subclass, because it's not guaranteed that the other nodes reachable
      from the current one will be instances of the same subclass.

    * If the model is a proxy model, the returned nodes should also use
      the proxy class.
    """
    base_class = cls._meta.get_field('lft').model
    if cls._meta.proxy_for_model == base_class:
        return cls
    return base_class


class NS_NodeQuerySet(models.query.QuerySet):
    """
    Custom queryset for the tree node manager.

    Needed only for the customized delete method.
    """

    def delete(self, *args, **kwargs):
        """
        Custom delete method, will remove all descendant nodes to ensure a
        consistent tree (no orphans), and close the gaps they leave behind.

        :returns: tuple of the number of objects deleted and a dictionary
                  with the number of deletions per object type
        """
        model = get_result_class(self.model)
        with model._tree_transaction('delete'):
            # the minimal list of branches to remove: ordered by lft, a node
            # inside a selected branch always follows that branch's root
            ranges = []
            for lft, rgt in self.order_by('lft').values_list('lft', 'rgt'):
                if ranges and lft < ranges[-1][1]:
                    continue
                ranges.append((lft, rgt))

            if not ranges:
                return super(NS_NodeQuerySet, model.objects.none()).delete(
                    *args, **kwargs)

            query = reduce(operator.or_,
                           [Q(lft__range=(lft, rgt)) for lft, rgt in ranges])
            result = super(NS_NodeQuerySet, model.objects.filter(query)).delete(
                *args, **kwargs)

            # closing the gaps from right to left, so the ranges still to be
            # closed keep their numbering
            tree = model.objects.all()
            for drop_lft, drop_rgt in reversed(ranges):
                gaps.narrow(tree, drop_lft, drop_rgt - drop_lft + 1)
            logger.debug('Deleted %d %s branches', len(ranges),
                         model._meta.label)
            return result

    delete.alters_data = True
    delete.queryset_only = True


class NS_NodeManager(models.Manager):
    """Custom manager for nodes in a Nested Sets tree."""

    def get_queryset(self):
        """Sets the custom queryset as the default, in DFS order."""
        return NS_NodeQuerySet(self.model, using=self._db).order_by('lft')


class NS_Node(models.Model):
    """Abstract model to create your own Nested Sets Trees."""

    lft = models.PositiveIntegerField(db_index=True, editable=False)
    rgt = models.PositiveIntegerField(db_index=True, editable=False)
    parent = models.ForeignKey(
        'self',
        related_name='children',
        null=True,
        blank=True,
        editable=False,
        on_delete=models.CASCADE,
    )

    # take a row lock on the root nodes before restructuring the tree. An
    # empty table has no rows to lock: PostgreSQL locks the table instead,
    # other backends don't serialise concurrent first placements
    lock_tree = True

    objects = NS_NodeManager()

    @classmethod
    @contextlib.contextmanager
    def _tree_transaction(cls, action):
        """
        Runs a block that restructures the tree: atomically, holding the
        tree lock. Database errors roll everything back and are reported
        as :class:`StorageError`.
        """
        using = router.db_for_write(cls)
        try:
            with transaction.atomic(using=using):
                cls._lock(using)
                yield
        except DatabaseError as exc:
            logger.warning('%s on %s rolled back: %s', action,
                           cls._meta.label, exc)
            raise StorageError(
                "Couldn't %s: the database failed and the tree was left"
                " unchanged" % (action, )) from exc

    @classmethod
    def _lock(cls, using):
        if not cls.lock_tree:
            return
        model = get_result_class(cls)
        # evaluated only for the row locks
        roots = list(model.objects.using(using).select_for_update()
                     .filter(parent__isnull=True).values_list('pk', flat=True))
        connection = connections[using]
        if not roots and connection.vendor == 'postgresql':
            # conflicts with itself, so first placements wait for each other
            with connection.cursor() as cursor:
                cursor.execute(
                    'LOCK TABLE %s IN SHARE ROW EXCLUSIVE MODE'
                    % connection.ops.quote_name(model._meta.db_table))

    @classmethod
    def add_root(cls, **kwargs):
        """
        Adds a root node to the tree. The new root node will be the new
        rightmost root node.

        :returns: the created node object. It will be save()d by this method.
        """
        newobj = cls(**kwargs)
        newobj.place()
        return newobj

    def add_child(self, **kwargs):
        """
        Adds a child to the node. The new node will be the new rightmost
        child.

        :returns: The created node object. It will be save()d by this method.
        """
        newobj = self.__class__(**kwargs)
        newobj.place(self)
        return newobj

    def place(self, parent=None):
        """
        Gives a new node its first position in the tree, as the last child of
        ``parent`` or, without a parent, as the last root node. The node is
        saved.

        :raise NodeAlreadyPlaced: when the node already has a position
        """
        if self.lft is not None:
            raise NodeAlreadyPlaced(
                'Attempted to place a node that is already in the tree.'
                ' Use move() to change its position.')
        if parent is not None:
            return self.move(Position.INTO, parent)
        cls = get_result_class(self.__class__)
        with cls._tree_transaction('place'):
            return self._place_at(cls.get_max_rgt() + 1)

    def move(self, pos, target=None):
        """
        Moves the current node and all its descendants to a new position.

        :param pos:

            A :class:`~nestedset.positions.Position` (or its value):

            - ``higher``: swap places with the previous sibling
            - ``highest``: become the first child of the parent
            - ``lower``: swap places with the next sibling
            - ``lowest``: become the last child of the parent
            - ``indent``: become the last child of the previous sibling
            - ``outdent``: become the next sibling of the parent
            - ``into``: become the last child of ``target``
            - ``above``: become the previous sibling of ``target``
            - ``below``: become the next sibling of ``target``
            - ``to``: take the ``lft`` slot given as ``target``

        :param target: the reference node, or the offset for ``to``

        :returns: ``True`` if the node moved, ``False`` when there was
            nothing to do (already there, no sibling or parent in that
            direction)

        :raise InvalidPosition: when passing an invalid ``pos`` or offset
        :raise RecursiveNesting: when trying to move a node into itself or
           one of its own descendants
        :raise StorageError: when the database fails, nothing is changed

        Examples::

           node.move('higher')

           node.move(Position.INTO, other_node)
        """
        directive = Directive.build(pos, target)
        cls = get_result_class(self.__class__)
        with cls._tree_transaction('move'):
            if self.lft is None:
                moved = self._place_at(resolve(self, directive))
            else:
                self.reload_position()
                moved = self._move_to(resolve(self, directive))

        reference = directive.target
        if moved and isinstance(reference, NS_Node) and \
                reference.pk is not None and reference.pk != self.pk:
            # the reference was renumbered by the move
            reference.reload_position()
        return moved

    def _place_at(self, position):
        cls = get_result_class(self.__class__)
        if position is None:
            if cls.objects.exists():
                return False
            self.lft, self.rgt = 1, 2
        else:
            gaps.widen(cls.objects.all(), 2, position)
            self.lft, self.rgt = position, position + 1
        self.parent = self.get_ancestor()
        self.save()
        logger.debug('Placed %s node %s at %d..%d', cls._meta.label,
                     self.pk, self.lft, self.rgt)
        return True

    def _move_to(self, position):
        if intervals.is_no_op(self, position):
            return False
        if intervals.is_into_own_subtree(self, position):
            raise RecursiveNesting(
                "Can't move node into itself or one of its descendants.")

        tree = get_result_class(self.__class__).objects.all()
        gap = intervals.gap_width(self)
        oldpos = self.lft

        gaps.widen(tree, gap, position)
        # opening the gap shifts this branch when it lies to the right
        self.reload_position()
        gaps.relocate(tree, self.lft, self.rgt,
                      intervals.distance(self, position))
        gaps.narrow(tree, self.lft, gap)
        # closing the gap shifts this branch when it now lies to the right
        self.reload_position()

        self.parent = self.get_ancestor()
        self.save()
        logger.debug('Moved %s node %s from %d to %d..%d',
                     self._meta.label, self.pk, oldpos, self.lft, self.rgt)
        return True

    def reload_position(self):
        """
        Reads ``lft``, ``rgt`` and ``parent`` again from the database. Needed
        after any restructuring, since the bounds of nodes not directly
        involved shift too.
        """
        self.refresh_from_db(fields=['lft', 'rgt', 'parent'])

    @classmethod
    def get_max_rgt(cls):
        """:returns: The highest ``rgt`` in the table, ``0`` when empty."""
        return get_result_class(cls).objects.aggregate(
            max_rgt=Max('rgt'))['max_rgt'] or 0

    @classmethod
    def get_root_nodes(cls):
        """:returns: A queryset containing the root nodes in the tree."""
        return get_result_class(cls).objects.filter(parent__isnull=True)

    @classmethod
    def get_first_root_node(cls):
        """:returns: The first root node in the tree or ``None`` if empty"""
        return cls.get_root_nodes().first()

    @classmethod
    def get_last_root_node(cls):
        """:returns: The last root node in the tree or ``None`` if empty"""
        return cls.get_root_nodes().last()

    @classmethod
    def get_leaf_nodes(cls):
        """:returns: A queryset of every node without children."""
        return get_result_class(cls).objects.filter(rgt=F('lft') + 1)

    @classmethod
    def get_tree(cls, parent=None):
        """
        :returns: A *queryset* of nodes ordered as DFS, including the parent.
                  If no parent is given, the entire tree is returned.
        """
        if parent is None:
            return get_result_class(cls).objects.all()
        return parent.get_self_and_descendants()

    def _tree(self):
        return get_result_class(self.__class__).objects.all()

    def get_self_and_ancestors(self):
        """
        :returns: A queryset with the node's ancestors and the node itself,
            starting by the root node.
        """
        return self._tree().filter(lft__lte=self.lft, rgt__gte=self.rgt)

    def get_ancestors(self):
        """
        :returns: A queryset containing the current node object's ancestors,
            starting by the root node and descending to the parent.
        """
        return self._tree().filter(lft__lt=self.lft, rgt__gt=self.rgt)

    def get_ancestor(self):
        """
        :returns: the closest ancestor, found from the node's bounds instead
            of the ``parent`` reference. ``None`` for root nodes.
        """
        return self.get_ancestors().last()

    def get_root(self):
        """:returns: the root node for the current node object."""
        return self.get_ancestors().first() or self

    def get_self_and_descendants(self):
        """
        :returns: A queryset of the node and all its descendants, as DFS.
        """
        return self._tree().filter(lft__range=(self.lft, self.rgt))

    def get_descendants(self):
        """
        :returns: A queryset of all the node's descendants as DFS, doesn't
            include the node itself
        """
        return self._tree().filter(lft__gt=self.lft, lft__lt=self.rgt)

    def get_descendant_count(self):
        """:returns: the number of descendants of a node."""
        return (self.rgt - self.lft - 1) // 2

    def get_leaves(self):
        """:returns: A queryset of the node's descendants without children."""
        return self.get_descendants().filter(rgt=F('lft') + 1)

    def get_self_and_siblings(self):
        """
        :returns: A queryset of the nodes that share the node's parent,
            including the node itself.
        """
        if self.parent_id is None:
            return self.get_root_nodes()
        return self._tree().filter(parent_id=self.parent_id)

    def get_siblings(self):
        """
        :returns: A queryset of the nodes that share the node's parent.
        """
        return self.get_self_and_siblings().exclude(pk=self.pk)

    def get_prev_sibling(self):
        """
        :returns: The previous node's sibling, or None if it was the leftmost
            sibling.
        """
        return self.get_self_and_siblings().filter(rgt=self.lft - 1).first()

    def get_next_sibling(self):
        """
        :returns: The next node's sibling, or None if it was the rightmost
            sibling.
        """
        return self.get_self_and_siblings().filter(lft=self.rgt + 1).first()

    def get_parent(self, update=False):
        """
        :returns: the parent node of the current node object.

        :param update: Reads the parent again instead of using Django's
            cached relation.
        """
        if self.parent_id is None:
            return None
        if update:
            return self._tree().get(pk=self.parent_id)
        return self.parent

    def get_children(self):
        """:returns: A queryset of all the node's children"""
        return self._tree().filter(parent_id=self.pk)

    def get_children_count(self):
        """:returns: The number of the node's children"""
        return self.get_children().count()

    def get_depth(self):
        """:returns: the depth (level) of the node, roots are at level 1"""
        return self.get_ancestors().count() + 1

    def is_root(self):
        """:returns: True if the node is a root node (else, returns False)"""
        return self.parent_id is None

    def is_leaf(self):
        """:returns: True if the node is a leaf node (else, returns False)"""
        return self.rgt - self.lft == 1

    def is_descendant_of(self, node):
        """
        :returns: ``True`` if the node is a descendant of another node given
            as an argument, else, returns ``False``
        """
        return node.lft < self.lft and self.rgt < node.rgt

    def is_ancestor_of(self, node):
        """
        :returns: ``True`` if the node is an ancestor of another node given
            as an argument, else, returns ``False``
        """
        return node.is_descendant_of(self)

    def delete(self, *args, **kwargs):
        """
        Removes a node and all its descendants, closing the gap they leave.
        """
        return get_result_class(self.__class__).objects.filter(
            pk=self.pk).delete(*args, **kwargs)

    @classmethod
    def load_bulk(cls, bulk_data, parent=None, keep_ids=False):
        """
        Loads a list/dictionary structure to the tree.

        :param bulk_data:

            The data that will be loaded, the structure is a list of
            dictionaries with 2 keys:

            - ``data``: will store arguments that will be passed for object
              creation, and

            - ``children``: a list of dictionaries, each one has its own
              ``data`` and ``children`` keys (a recursive structure)

        :param parent:

            The node that will receive the structure as children, if not
            specified the first level of the structure will be loaded as root
            nodes

        :param keep_ids:

            If enabled, loads the nodes with the same primary keys that are
            given in the structure, under the ``id`` key.

        :returns: A list of the added node ids.
        """
        pk_field = cls._meta.pk.attname
        added = []
        with transaction.atomic(using=router.db_for_write(cls)):
            # tree, iterative preorder
            stack = [(parent, node) for node in bulk_data[::-1]]
            while stack:
                parent, node_struct = stack.pop()
                node_data = cls._bulk_node_data(node_struct['data'])
                if keep_ids:
                    node_data[pk_field] = node_struct['id']
                if parent:
                    node_obj = parent.add_child(**node_data)
                else:
                    node_obj = cls.add_root(**node_data)
                added.append(node_obj.pk)
                if 'children' in node_struct:
                    # extending the stack with the current node as the parent
                    # of the new nodes
                    stack.extend([(node_obj, node)
                                  for node in node_struct['children'][::-1]])
        return added

    @classmethod
    def _bulk_node_data(cls, data):
        # dumped foreign keys are primary key values
        node_data = {}
        for name, value in data.items():
            field = cls._meta.get_field(name)
            if field.many_to_one:
                name = field.attname
            node_data[name] = value
        return node_data

    @classmethod
    def dump_bulk(cls, parent=None, keep_ids=True):
        """
        Dumps a tree branch to a python data structure.

        :param parent:

            The node whose descendants will be dumped. The node itself will be
            included in the dump. If not given, the entire tree will be dumped.

        :param keep_ids:

            Stores the id value (primary key) of every node. Enabled by
            default.

        :returns: A python data structure, described with detail in
                  :meth:`load_bulk`
        """
        objs = list(cls.get_tree(parent))
        pk_field = cls._meta.pk.attname
        ret, lnk = [], {}
        for node, pyobj in zip(objs, serializers.serialize('python', objs)):
            # django's serializer stores the attributes in 'fields'
            fields = pyobj['fields']
            # the position is rebuilt by load_bulk
            for name in ('lft', 'rgt', 'parent', pk_field):
                fields.pop(name, None)

            newobj = {'data': fields}
            if keep_ids:
                newobj['id'] = pyobj['pk']

            if (parent is None and node.parent_id is None) or \
                    (parent is not None and node.pk == parent.pk):
                ret.append(newobj)
            else:
                parentobj = lnk[node.parent_id]
                parentobj.setdefault('children', []).append(newobj)
            lnk[node.pk] = newobj
        return ret

    @classmethod
    def find_problems(cls):
        """
        Checks for problems in the tree structure, problems can occur when
        the tree is modified without transactions, or when ``lft``/``rgt``
        or ``parent`` are changed by hand.

        :returns: A tuple of four lists:

                  1. a list of ids of nodes with ``lft >= rgt``
                  2. a list of ids of nodes that share a bound value with
                     another node
                  3. a list of ids of nodes that partially overlap another
                     node
                  4. a list of ids of nodes whose ``parent`` isn't the node
                     that contains them
        """
        rows = list(get_result_class(cls).objects.values_list(
            'pk', 'lft', 'rgt', 'parent_id'))

        bad_bounds, duplicated, overlapping, wrong_parent = [], [], [], []

        seen = {}
        for pk, lft, rgt, parent_id in rows:
            seen[lft] = seen.get(lft, 0) + 1
            seen[rgt] = seen.get(rgt, 0) + 1

        # sweep in lft order keeping the chain of open intervals
        stack = []
        for pk, lft, rgt, parent_id in rows:
            if lft >= rgt:
                bad_bounds.append(pk)
                continue
            if seen[lft] > 1 or seen[rgt] > 1:
                duplicated.append(pk)
                continue
            while stack and stack[-1][2] < lft:
                stack.pop()
            if stack and rgt > stack[-1][2]:
                overlapping.append(pk)
                continue
            container = stack[-1][0] if stack else None
            if container != parent_id:
                wrong_parent.append(pk)
            stack.append((pk, lft, rgt))

        return bad_bounds, duplicated, overlapping, wrong_parent

    @classmethod
    def fix_tree(cls):
        """
        Renumbers the whole tree from the ``parent`` references, keeping the
        current order of siblings. Solves the problems reported by
        :meth:`find_problems` that can appear when transactions are not used
        and a piece of code breaks, leaving the tree in an inconsistent state.

        Nodes whose parents form a loop are detached and become root nodes.
        """
        model = get_result_class(cls)
        with model._tree_transaction('fix the tree'):
            rows = list(model.objects.values_list('pk', 'lft', 'rgt',
                                                  'parent_id'))
            current = {pk: (lft, rgt, parent_id)
                       for pk, lft, rgt, parent_id in rows}
            children = {}
            for pk, lft, rgt, parent_id in rows:
                children.setdefault(parent_id, []).append(pk)

            bounds, detached = {}, set()
            counter = 0
            starts = list(children.get(None, []))
            starts.extend(pk for pk, lft, rgt, parent_id in rows
                          if parent_id is not None)
            for start in starts:
                if start in bounds:
                    continue
                if current[start][2] is not None:
                    # only reachable through a loop of parents
                    detached.add(start)
                stack = [(start, False)]
                while stack:
                    pk, closing = stack.pop()
                    counter += 1
                    if closing:
                        bounds[pk] = (bounds[pk], counter)
                        continue
                    bounds[pk] = counter
                    stack.append((pk, True))
                    stack.extend((child, False)
                                 for child in children.get(pk, [])[::-1]
                                 if child not in bounds)

            fixed = 0
            for pk, (lft, rgt) in bounds.items():
                oldlft, oldrgt, parent_id = current[pk]
                values = {}
                if (lft, rgt) != (oldlft, oldrgt):
                    values.update(lft=lft, rgt=rgt)
                if pk in detached:
                    values['parent'] = None
                if values:
                    model.objects.filter(pk=pk).update(**values)
                    fixed += 1
            logger.debug('Renumbered %d %s nodes', fixed, model._meta.label)

    class Meta:
        """
        Abstract model.
        """
        abstract = True
