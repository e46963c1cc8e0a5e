import numpy as np, scipy.sparse as sp
from sepgraph import FunctionVector, GraphProblem, Kernel, solve
m, n = 400, 120
rng = np.random.default_rng(0)
A = sp.random(m, n, density=0.1, data_rvs=rng.standard_normal, format="csr", random_state=0)
b = A @ np.where(rng.random(n) < 0.1, rng.standard_normal(n), 0.0) + 0.01 * rng.standard_normal(m)
f = FunctionVector(m, h=Kernel.SQUARE, b=b)
g = FunctionVector(n, h=Kernel.ABS, c=0.05)
res = solve(GraphProblem(A, f, g, verbose=2))
print("Status:", res.status.name)
print("Objective:", res.objective)
print("Primal residual:", res.primal_residual)
print("Dual residual:", res.dual_residual)
print("Nonzeros in x:", int((np.abs(res.x) > 1e-6).sum()))
