"""Tests for solver controls and performance records."""

import numpy as np
import pytest

from LDU.datastructures import SolverControls, SolverPerformance
from LDU.errors import ConfigurationError


class TestSolverControls:
    """Parsing and validation of solver controls."""

    def test_defaults(self):
        controls = SolverControls()

        assert controls.solver == "PCG"
        assert controls.max_iter == 1000
        assert controls.preconditioner == "none"
        assert controls.n_cells_in_coarsest_level == 10
        assert controls.interpolate_correction is False

    def test_from_dict_accepts_dictionary_style_keys(self):
        controls = SolverControls.from_dict(
            {"solver": "GAMG", "relTol": 0.01, "maxIter": 50, "nPreSweeps": 1, "coupled": "off",
             "interpolateCorrection": "on"}
        )

        assert controls.solver == "GAMG"
        assert controls.rel_tol == 0.01
        assert controls.max_iter == 50
        assert controls.n_pre_sweeps == 1
        assert controls.coupled is False
        assert controls.interpolate_correction is True

    def test_from_dict_accepts_attribute_names(self):
        controls = SolverControls.from_dict({"rel_tol": 0.1, "n_sweeps": 3})

        assert controls.rel_tol == 0.1
        assert controls.n_sweeps == 3

    def test_int_promoted_to_float(self):
        assert SolverControls.from_dict({"tolerance": 0}).tolerance == 0.0

    def test_unknown_key_lists_valid_controls(self):
        with pytest.raises(ConfigurationError, match="Unknown solver control 'maxIterations'") as info:
            SolverControls.from_dict({"maxIterations": 10})
        assert "maxIter" in str(info.value)

    @pytest.mark.parametrize(
        "entries",
        [{"maxIter": "many"}, {"maxIter": 2.5}, {"tolerance": "small"}, {"coupled": 3}, {"solver": ""}],
    )
    def test_wrong_type_raises(self, entries):
        with pytest.raises(ConfigurationError, match="Invalid value"):
            SolverControls.from_dict(entries)

    @pytest.mark.parametrize(
        "entries",
        [{"tolerance": -1.0}, {"minIter": 5, "maxIter": 2}, {"mergeFactor": 1}, {"maxCoarseRatio": 1.0}],
    )
    def test_invalid_values_raise(self, entries):
        with pytest.raises(ConfigurationError):
            SolverControls.from_dict(entries)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            SolverControls.from_dict({"bogus": 1})

    def test_nested_preconditioner_inherits_parent(self):
        controls = SolverControls.from_dict(
            {
                "solver": "PCG",
                "smoother": "DIC",
                "preconditioner": {"preconditioner": "GAMG", "nVcycles": 3},
            }
        )
        nested = controls.preconditioner_controls()

        assert controls.preconditioner == "GAMG"
        assert nested.n_vcycles == 3
        assert nested.smoother == "DIC"

    def test_nested_preconditioner_requires_name(self):
        with pytest.raises(ConfigurationError, match="requires a 'preconditioner' entry"):
            SolverControls.from_dict({"preconditioner": {"nVcycles": 3}})

    def test_coarsest_defaults(self):
        controls = SolverControls.from_dict({"solver": "GAMG", "tolerance": 1e-9})

        symmetric = controls.coarsest_controls(symmetric=True)
        asymmetric = controls.coarsest_controls(symmetric=False)

        assert (symmetric.solver, symmetric.preconditioner) == ("PCG", "DIC")
        assert (asymmetric.solver, asymmetric.preconditioner) == ("PBiCGStab", "DILU")
        assert symmetric.tolerance == 1e-9

    def test_coarsest_overrides(self):
        controls = SolverControls.from_dict(
            {"coarsestLevelCorr": {"solver": "PBiCGStab", "preconditioner": "diagonal", "relTol": 0.1}}
        )
        coarsest = controls.coarsest_controls(symmetric=True)

        assert coarsest.solver == "PBiCGStab"
        assert coarsest.preconditioner == "diagonal"
        assert coarsest.rel_tol == 0.1

    def test_coerce(self):
        controls = SolverControls(max_iter=7)

        assert SolverControls.coerce(controls) is controls
        assert SolverControls.coerce(None) == SolverControls()
        assert SolverControls.coerce({"maxIter": 7}).max_iter == 7
        with pytest.raises(ConfigurationError):
            SolverControls.coerce(42)


class TestSolverPerformance:
    """Convergence and singularity checks."""

    @pytest.mark.parametrize(
        "initial,final,tol,rel_tol,expected",
        [
            (1.0, 1e-7, 1e-6, 0.0, True),
            (1.0, 1e-5, 1e-6, 0.0, False),
            (1.0, 1e-3, 1e-6, 0.01, True),
            (1.0, 1e-1, 1e-6, 0.01, False),
            # relTol at or below 1e-20 counts as disabled
            (1.0, 0.5, 1e-6, 1e-21, False),
        ],
    )
    def test_check_convergence(self, initial, final, tol, rel_tol, expected):
        performance = SolverPerformance(initial_residual=initial, final_residual=final)

        assert performance.check_convergence(tol, rel_tol) is expected
        assert performance.converged is expected

    @pytest.mark.parametrize(
        "value,expected", [(0.0, True), (1e-301, True), (np.nan, True), (np.inf, True), (1e-10, False)]
    )
    def test_check_singularity(self, value, expected):
        performance = SolverPerformance()

        assert performance.check_singularity(value) is expected

    def test_combine_and_max(self):
        a = SolverPerformance("PCG", "U", 1.0, 1e-7, 10, True, False, [1.0, 1e-7])
        b = SolverPerformance("PCG", "U", 2.0, 1e-6, 12, False, False, [2.0, 1e-6])

        combined = SolverPerformance.combine([a, b])
        worst = combined.max()

        assert np.allclose(combined.initial_residual, [1.0, 2.0])
        assert list(combined.n_iterations) == [10, 12]
        assert not combined.converged
        assert worst.initial_residual == 2.0
        assert worst.n_iterations == 12
