import collections.abc
import numpy as np
import pandas as pd


def intersect_arrays(arr1, arr2, return_index=False):
    """
    This utility function takes two arrays and returns the shared
    elements (intersection) between them. If return_index is set to True,
    it returns the index of shared elements in the first array.

    :param arr1: The first array
    :param arr2: The second array
    :param return_index: Return the index of shared elements in the first array

    :return: A numpy array of shared elements or their indices
    """

    # NOTE: For consistent results, we cast all data types to `str`.
    common_elements = pd.DataFrame({'ID': arr1}, dtype=str).reset_index().merge(
        pd.DataFrame({'ID': np.unique(np.asarray(arr2).astype(str))}, dtype=str)
    )

    if return_index:
        return common_elements['index'].values
    else:
        return common_elements['ID'].values


def lookup_index(keys, query):
    """
    Find the positions of `query` items within `keys`.

    :param keys: A numpy array of unique identifiers.
    :param query: An iterable of identifiers to look up.

    :return: A tuple of (positions, found_mask), where `positions` is -1 for items not found.
    """

    index = pd.Index(np.asarray(keys).astype(str))
    positions = index.get_indexer(np.asarray(query).astype(str))

    return positions, positions >= 0


def iterable(arg):
    """
    Check if an object is iterable, but not a string.
    :param arg: A python object.
    :return: True if the object is iterable, False otherwise.
    """

    return (
        isinstance(arg, collections.abc.Iterable)
        and not isinstance(arg, str)
    )
