import os
import os.path as osp
import glob
import shutil
import tempfile
import psutil

from ..exceptions import AlreadyExistsError


class AtomicDirectory:
    """
    A context manager that stages the contents of an output directory in a temporary
    sibling directory and moves it into its final location only when the enclosed block
    completes without raising. This guarantees that a partially-written store is never
    found at the final path.

    Example:

    ```
    with AtomicDirectory('output/chr_22.zarr', overwrite=False) as staging_dir:
        # Write files into `staging_dir`
        ...
    ```

    :ivar target: The final path of the directory.
    :ivar overwrite: If True, an existing directory at `target` is replaced on completion.
    :ivar staging_dir: The temporary directory where the contents are staged.
    """

    def __init__(self, target, overwrite=False):
        """
        :param target: The final path of the directory.
        :param overwrite: If True, replace an existing directory at `target` on completion.
        Otherwise, raise `AlreadyExistsError` before anything is written.
        """
        self.target = osp.abspath(target)
        self.overwrite = overwrite
        self.staging_dir = None

    def __enter__(self):

        if osp.exists(self.target) and not self.overwrite:
            raise AlreadyExistsError(f"Output already exists at {self.target}. "
                                     f"Pass `overwrite=True` to replace it.")

        parent = osp.dirname(self.target)
        makedir(parent)

        self.staging_dir = tempfile.mkdtemp(dir=parent, prefix=osp.basename(self.target) + '.tmp-')
        return self.staging_dir

    def __exit__(self, exc_type, exc_value, traceback):

        if exc_type is not None:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            return False

        try:
            if osp.exists(self.target):
                if not self.overwrite:
                    raise AlreadyExistsError(f"Output appeared at {self.target} while it was being computed.")
                shutil.rmtree(self.target)
            os.rename(self.staging_dir, self.target)
        except Exception:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            raise

        return False


def available_cpu():
    """
    :return: The number of available cores on the system minus 1.
    """
    return max(1, psutil.cpu_count() - 1)


def get_memory_usage():
    """
    :return: The current memory usage of the running process in Mega Bytes (MB)
    """
    process = psutil.Process(os.getpid())
    mem_info = process.memory_info()
    return mem_info.rss / (1024 ** 2)


def makedir(dirs):
    """
    Create directories on the filesystem, recursively.
    :param dirs: A string or list of strings with the paths to create.
    :raises: OSError if it fails to create the directory structure.
    """

    if isinstance(dirs, str):
        dirs = [dirs]

    for dir_l in dirs:
        if dir_l:
            os.makedirs(dir_l, exist_ok=True)


def get_filenames(path, extension=None):
    """
    Obtain valid and full path names given the provided `path` or prefix and extensions.

    :param path: A string with the path prefix or full path.
    :param extension: The extension for the class of files to search for.

    :return: A sorted list of strings with the full paths of the files/folders.
    """

    if osp.isdir(path):
        if extension:
            if osp.isfile(osp.join(path, extension)):
                return [path]
            else:
                return sorted(f.rstrip('/') for f in glob.glob(osp.join(path, '*'))
                              if f.endswith(extension) or osp.isfile(osp.join(f, extension)))
        else:
            return sorted(glob.glob(osp.join(path, '*')))
    else:
        if extension is None:
            return sorted(glob.glob(path + '*'))
        elif path.endswith(extension):
            return sorted(glob.glob(path))
        elif osp.isfile(path + extension):
            return [path + extension]
        else:
            return sorted(set(
                    glob.glob(path + '*' + extension) +
                    glob.glob(osp.join(path, '*' + extension))
            ))
