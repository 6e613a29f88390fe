import os.path as osp
import glob
import configparser

# Error taxonomy:
from .exceptions import *

# Data structures:
from .SampleTable import SampleTable
from .GenotypeMatrix import GenotypeMatrix
from .GenotypeStore import GenotypeStore
from .SparseLDBlock import SparseLDBlock
from .LDStore import LDStore
from .SumstatsTable import SumstatsTable
from .GenotypeCatalog import GenotypeCatalog

# Analyses:
from .stats.ld.estimator import SparseLDBuilder
from .stats.adjust.clump import SummaryStatAdjuster, adjust_stat
from .stats.blr.sampler import BayesianMarkerSampler, gbayes
from .stats.score.utils import ScoreProjector, gscore

__version__ = '0.1.0'
__release_date__ = 'October 2026'


config = configparser.ConfigParser()
config.read(glob.glob(osp.join(osp.dirname(__file__), 'config/*.ini')))


def print_options():
    """
    Print the options stored in the configuration file
    """
    for sec in config.sections() + [config.default_section]:
        print("-> Section:", sec)
        for key in config[sec]:
            print(f"---> {key}: {config[sec][key]}")


def get_option(key):
    """
    Get the option associated with a given key
    """
    try:
        return config['USER'][key]
    except KeyError:
        return config['DEFAULT'][key]


def set_option(key, value):
    """
    Set an option in the configuration file by providing a key and a value
    """
    if 'USER' in config.sections():
        config['USER'][key] = str(value)
    else:
        config['USER'] = {key: str(value)}

    with open(osp.join(osp.dirname(__file__), 'config/defaults.ini'), 'w') as configfile:
        config.write(configfile)
