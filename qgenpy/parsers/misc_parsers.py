import pandas as pd


def read_snp_filter_file(filename, snp_id_col=0):
    """
    Read plink-style file listing variant IDs.
    The file should not have a header and only has a single column.

    :param filename: The path to the file containing the SNP IDs
    :type filename: str
    :param snp_id_col: The column index containing the SNP IDs
    :type snp_id_col: int

    :return keep_list: A numpy array with the SNP IDs
    """

    return pd.read_csv(filename, sep=r'\s+', header=None, dtype=str).values[:, snp_id_col]


def read_sample_filter_file(filename):
    """
    Read plink-style file listing sample IDs.
    The file should not have a header and has two columns corresponding
    to Family ID (FID) and Individual ID (IID).
    You may also pass a file with a single-column of Individual IDs instead.

    :param filename: The path to the file containing the sample IDs
    :type filename: str

    :return: A numpy array with the sample IDs
    """

    keep_list = pd.read_csv(filename, sep=r'\s+', header=None, dtype=str).values

    if keep_list.shape[1] == 1:
        return keep_list[:, 0]
    else:
        return keep_list[:, 1]
