# sepgraph/__init__.py
from .errors import ConfigurationError, NumericalFailure
from .operators import (LinearOperator, DenseOperator, SparseOperator,
                        build_operator, as_operator)
from .prox_catalog import Kernel, FunctionObj, ProximalSpec, FunctionVector
from .equilibration import EquilibrationReport, equilibrate
from .factors import FactorizationHandle, allocate_factors, release_factors
from .parallel import ParallelReducer, max_diff, asum
from .problem import GraphProblem, Result, Status
from .admm_core import solve
from .graph_models import (solve_lasso, solve_ridge, solve_elastic_net, solve_nonneg_ls,
                           solve_bounded_ls, solve_logistic, solve_huber, solve_svm)
from .path import PathResult, lasso_path, regularization_path

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError", "NumericalFailure",
    "LinearOperator", "DenseOperator", "SparseOperator", "build_operator", "as_operator",
    "Kernel", "FunctionObj", "ProximalSpec", "FunctionVector",
    "EquilibrationReport", "equilibrate",
    "FactorizationHandle", "allocate_factors", "release_factors",
    "ParallelReducer", "max_diff", "asum",
    "GraphProblem", "Result", "Status", "solve",
    "solve_lasso", "solve_ridge", "solve_elastic_net", "solve_nonneg_ls",
    "solve_bounded_ls", "solve_logistic", "solve_huber", "solve_svm",
    "PathResult", "lasso_path", "regularization_path",
]
