"Nested set exceptions"


class NestedSetException(Exception):
    "Base class for all the errors raised by this library."


class InvalidPosition(NestedSetException):
    "Raised when passing an invalid move directive or offset."


class RecursiveNesting(NestedSetException):
    "Raised when attempting to move a node into one of its descendants."


class StorageError(NestedSetException):
    """
    Raised when the database fails while the tree is being restructured.

    The transaction has already been rolled back when this is raised, the
    database error is available as ``__cause__``.
    """


class NodeAlreadyPlaced(NestedSetException):
    "Raised when placing a node that already has a position in the tree."
