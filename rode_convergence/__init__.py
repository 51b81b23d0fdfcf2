"""Strong order of convergence of fixed-step solvers for random ODEs."""

from .errors import ConfigurationError, DimensionMismatchError
from .processes import (
    AbstractProcess,
    UnivariateProcess,
    MultivariateProcess,
    WienerProcess,
    OrnsteinUhlenbeckProcess,
    GeometricBrownianMotionProcess,
    CompoundPoissonProcess,
    PoissonStepProcess,
    ExponentialHawkesProcess,
    TransportProcess,
    ProductProcess,
)
from .fbm import FractionalBrownianMotionProcess
from .solvers import RODEMethod, RandomEuler, RandomHeun, CustomMethod, solve_path
from .convergence import ConvergenceSuite, ConvergenceResult, fit_order, solve, solve_parallel
from .reporting import (
    generate_error_table,
    error_frame,
    trajectory_frame,
    plot_convergence,
    plot_trajectory_errors,
    plot_sample,
    save_result,
    load_result,
)

__version__ = "0.1.0"
