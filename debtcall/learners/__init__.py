from .bandit import ContextualBandit
from .baselines import (
    BASELINE_NAMES,
    BaselineSelector,
    FixedScriptPolicy,
    HeuristicPolicy,
    RandomPolicy,
    make_baseline,
)
from .qlearning import TabularQLearner
from .selector import ActionSelector, Selection, argmax
from .snapshot import (
    build_store,
    dumps_snapshot,
    export_snapshot,
    import_snapshot,
    load_snapshot,
    load_store_from_file,
    save_snapshot,
)
from .table import ActionValueStore, ActionValueTable, BanditParams, QTableParams, fresh_table

__all__ = [
    "BASELINE_NAMES",
    "ActionSelector",
    "ActionValueStore",
    "ActionValueTable",
    "BanditParams",
    "BaselineSelector",
    "ContextualBandit",
    "FixedScriptPolicy",
    "HeuristicPolicy",
    "QTableParams",
    "RandomPolicy",
    "Selection",
    "TabularQLearner",
    "argmax",
    "build_store",
    "dumps_snapshot",
    "export_snapshot",
    "fresh_table",
    "import_snapshot",
    "load_snapshot",
    "load_store_from_file",
    "make_baseline",
    "save_snapshot",
]
