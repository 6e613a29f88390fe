import numpy as np


def standardize(g_mat, impute=True):
    """
    Standardize the genotype matrix, such that the columns (i.e. variants)
    have zero mean and unit variance. Missing calls (`NaN`) are replaced by the
    column mean before scaling, i.e. they contribute zero to the standardized matrix.
    Columns with zero variance are set to zero.

    :param g_mat: A two-dimensional numpy array where the rows are samples (individuals)
    and the columns are genetic variants.
    :param impute: If True, mean-impute missing calls. Otherwise, missing calls remain `NaN`.

    :return: The standardized genotype matrix (float64).
    """

    g_mat = np.asarray(g_mat, dtype=np.float64)

    with np.errstate(invalid='ignore'):
        mean = np.nanmean(g_mat, axis=0) if g_mat.shape[0] > 0 else np.zeros(g_mat.shape[1])
    mean = np.nan_to_num(mean)

    centered = g_mat - mean
    if impute:
        centered = np.nan_to_num(centered)

    std = np.sqrt(np.nanmean(centered ** 2, axis=0)) if g_mat.shape[0] > 0 else np.zeros(g_mat.shape[1])
    std[~np.isfinite(std)] = 0.

    with np.errstate(divide='ignore', invalid='ignore'):
        scaled = np.where(std > 0., centered / np.where(std > 0., std, 1.), 0.)

    if not impute:
        scaled[np.isnan(g_mat)] = np.nan

    return scaled


def unit_norm_columns(g_mat):
    """
    Center (mean-imputing missing calls) and scale the columns of a genotype matrix
    to unit Euclidean norm, so that the Pearson correlation between two columns is
    their inner product. Columns with zero variance are set to zero.

    :param g_mat: A two-dimensional numpy array (samples x variants).
    :return: The transformed matrix (float64).
    """

    z = standardize(g_mat, impute=True)
    norm = np.sqrt((z ** 2).sum(axis=0))

    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(norm > 0., z / np.where(norm > 0., norm, 1.), 0.)
