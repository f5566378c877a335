import logging

import numpy as np

from utils import cli, io
from LDU import SOLVERS, PRECONDITIONERS, decompose, laplacian_2d, slice_partition, solve

# MPI imports
from mpi4py import MPI

# Create the argument parser using shared utility
parser = cli.create_parser(
    solvers=SOLVERS.names(symmetric=True),
    preconditioners=PRECONDITIONERS.names(symmetric=True),
    default_solver="PCG",
    description="Distributed 2-D Laplacian solve",
)

# Grab options!
options = parser.parse_args()
N: int = options.N

# Initialize MPI
comm = MPI.COMM_WORLD
rank = comm.Get_rank()
size = comm.Get_size()

logging.basicConfig(
    level=logging.DEBUG if options.verbose else logging.INFO,
    format=f"[rank {rank}] %(name)s: %(message)s",
)
if rank != 0:
    logging.getLogger().setLevel(logging.WARNING)

"""
The global matrix is assembled on every rank and cut into row slices;
rows coupled across slices become processor interfaces.
"""

A_global = laplacian_2d(N, use_numba=not options.no_numba)
cell_to_rank = slice_partition(A_global.n_cells, size)
A, cells = decompose(A_global, cell_to_rank, comm)

# Unit source; zero initial guess
x = np.zeros(A.n_cells)
b = np.ones(A.n_cells)

controls = {
    "solver": options.solver,
    "preconditioner": options.preconditioner,
    "smoother": options.smoother,
    "tolerance": options.tolerance,
    "relTol": options.rel_tol,
    "maxIter": options.max_iter,
}
performance = solve(A, x, b, controls, field_name="p")

# Gather all wall times to rank 0
wall_times = comm.gather(performance.wall_time, root=0)

if rank == 0:
    df = io.performance_to_dataframe(
        [performance],
        N=N,
        n_ranks=size,
        preconditioner=options.preconditioner,
        max_rank_wall_time=max(wall_times),
    )

    data_dir = io.get_data_dir(__file__)
    base_name = options.output or f"run_N{N}_{options.solver}_{options.preconditioner}_np{size}"
    base_name = base_name.replace(".parquet", "")
    io.save_performance_data(df, data_dir / f"{base_name}.parquet")
