"""
Integration Tests

End-to-end runs of the sampler on small synthetic data sets:
- structural invariants of every saved draw
- single-component round trip
- two groups with one common and one private component each
- adaptive truncation and per-pool concentrations
- bit-identical chains for equal seeds
- failure handling and fallback warnings in the driver
- the two-group recovery scenario (rho and group separation)

Run with: pytest tests/test_integration.py -v
"""

import logging
from unittest.mock import patch

import numpy as np
import pytest

from cremid import fit, SamplerInstabilityError
from cremid.checkpoint_io import load_state_dump
from cremid.error_handling import diagnose_chain
from cremid.mcmc.backend import _handle_failure, _run_sweeps
from cremid.mcmc.config import configure_sampler, initialize_state
from cremid.mcmc.sweep import gibbs_sweep
from cremid.mcmc.types import RunParams, SweepInfo


def _two_groups(seed=42):
    rng = np.random.default_rng(seed)
    Y = np.vstack([
        rng.normal(0.0, 1.0, size=(25, 2)),
        rng.normal([10.0, 10.0], 1.0, size=(20, 2)),
        rng.normal(0.0, 1.0, size=(25, 2)),
        rng.normal([-10.0, 10.0], 1.0, size=(20, 2)),
    ])
    C = np.repeat([1, 1, 2, 2], [25, 20, 25, 20])
    source = np.repeat([0, 1, 0, 2], [25, 20, 25, 20])
    return Y, C, source


@pytest.fixture(scope="module")
def two_group_chain():
    Y, C, source = _two_groups()
    chain = fit(Y, C, prior={'K': 6}, mcmc={'nburn': 20, 'nsave': 10, 'nskip': 2, 'ndisplay': 10, 'seed': 5})
    return chain, source


class TestSweep:
    """Test a single sweep outside the driver."""

    def test_one_sweep_valid(self, two_group_data, check_state):
        Y, C, _ = two_group_data
        user_config, ctx = configure_sampler(Y, C, {'K': 4}, {'seed': 0})
        state = initialize_state(ctx['init_key'], ctx['Y'], ctx['J'], user_config['prior'],
                                 ctx['prior_arrays'], user_config['mcmc'])
        new_state, key, info = gibbs_sweep(ctx['master_key'], ctx['Y'], ctx['C'], ctx['J'], state,
                                           ctx['prior_arrays'], ctx['run_params'])
        check_state(new_state, n=len(Y), J=2, K=4)
        assert info.n_fallback == 0
        assert info.n_merged >= 0
        assert not np.array_equal(np.asarray(key), np.asarray(ctx['master_key']))


class TestTwoGroupRun:
    """Test a full run on the two-group scenario."""

    def test_chain_shape(self, two_group_chain):
        chain, source = two_group_chain
        assert chain.n_saved == 10
        assert chain.draws.Z.shape == (10, len(source))
        assert chain.draws.mu.shape == (10, 6, 2)
        assert chain.draws.Sigma.shape == (10, 6, 2, 2)
        assert chain.draws.w.shape == (10, 2, 6)
        assert chain.draws.alpha.shape == (10, 3)
        assert len(chain.fallback_counts) == 20 + 10 * 2
        assert len(chain.merge_counts) == 20 + 10 * 2

    def test_every_draw_valid(self, two_group_chain, check_state):
        chain, source = two_group_chain
        for i in range(chain.n_saved):
            check_state(chain.state(i), n=len(source), J=2, K=6)

    def test_private_clusters_kept_apart(self, two_group_chain):
        """The two group-specific clusters never share a label."""
        chain, source = two_group_chain
        for i in range(chain.n_saved):
            Z = np.asarray(chain.draws.Z[i])
            assert not set(Z[source == 1]) & set(Z[source == 2])

    def test_echoed_inputs(self, two_group_chain):
        chain, source = two_group_chain
        Y, C, _ = _two_groups()
        np.testing.assert_array_equal(chain.Y, Y)
        np.testing.assert_array_equal(chain.C, C)
        assert chain.prior['K'] == 6
        assert chain.mcmc['nskip'] == 2
        assert chain.wall_time > 0


class TestSingleComponent:
    """K = 1 reduces the model to a single Gaussian."""

    def test_round_trip(self):
        rng = np.random.default_rng(3)
        true_mean = np.array([2.0, -1.0])
        true_cov = np.array([[1.0, 0.4], [0.4, 0.5]])
        Y = rng.multivariate_normal(true_mean, true_cov, size=300)
        C = np.ones(300, dtype=int)

        chain = fit(Y, C, prior={'K': 1}, mcmc={'nburn': 20, 'nsave': 20, 'ndisplay': 0, 'seed': 2})

        assert np.all(chain.draws.Z == 0)
        np.testing.assert_allclose(chain.draws.mu.mean(axis=0)[0], Y.mean(axis=0), atol=0.2)
        np.testing.assert_allclose(chain.draws.Sigma.mean(axis=0)[0], np.cov(Y, rowvar=False), atol=0.3)
        assert int(np.sum(chain.merge_counts)) == 0


class TestOptions:
    """Runs with non-default policies keep every invariant."""

    def test_adaptive_truncation(self, two_group_data, fast_mcmc, check_state):
        Y, C, _ = two_group_data
        chain = fit(Y, C, prior={'K': 5, 'truncation_type': 'adaptive'}, mcmc=fast_mcmc)
        for i in range(chain.n_saved):
            state = chain.state(i)
            check_state(state, n=len(Y), J=2, K=5)
            R = np.asarray(state.R)
            assert int(R.sum()) + int((R == 0).sum()) == 5

    def test_per_pool_alpha(self, two_group_data, fast_mcmc, check_state):
        Y, C, _ = two_group_data
        chain = fit(Y, C, prior={'K': 4, 'shared_alpha': False}, mcmc=fast_mcmc)
        for i in range(chain.n_saved):
            check_state(chain.state(i), n=len(Y), J=2, K=4)

    def test_merge_disabled(self, two_group_data, fast_mcmc):
        Y, C, _ = two_group_data
        chain = fit(Y, C, prior={'K': 4, 'merge_step': False}, mcmc=fast_mcmc)
        assert int(np.sum(chain.merge_counts)) == 0

    def test_no_saved_draws(self, two_group_data):
        Y, C, _ = two_group_data
        chain = fit(Y, C, prior={'K': 3}, mcmc={'nburn': 2, 'nsave': 0, 'ndisplay': 0})
        assert chain.draws is None
        assert chain.n_saved == 0
        with pytest.raises(IndexError):
            chain.state(0)


class TestDeterminism:
    """Equal seeds give bit-identical chains."""

    def test_same_seed_same_chain(self, two_group_data, fast_mcmc):
        Y, C, _ = two_group_data
        a = fit(Y, C, prior={'K': 4}, mcmc=dict(fast_mcmc))
        b = fit(Y, C, prior={'K': 4}, mcmc=dict(fast_mcmc))
        for name in ('Z', 'mu', 'Sigma', 'w0', 'w', 'rho', 'varphi', 'alpha', 'R', 'm_1', 'k_0', 'Psi_1'):
            np.testing.assert_array_equal(getattr(a.draws, name), getattr(b.draws, name))
        np.testing.assert_array_equal(a.merge_counts, b.merge_counts)

    def test_different_seed_different_chain(self, two_group_data, fast_mcmc):
        Y, C, _ = two_group_data
        a = fit(Y, C, prior={'K': 4}, mcmc={**fast_mcmc, 'seed': 1})
        b = fit(Y, C, prior={'K': 4}, mcmc={**fast_mcmc, 'seed': 2})
        assert not np.array_equal(a.draws.mu, b.draws.mu)


class TestFailureHandling:
    """The driver annotates, dumps and re-raises sweep failures."""

    def test_dump_on_instability(self, two_group_data, tmp_path):
        Y, C, _ = two_group_data
        user_config, ctx = configure_sampler(Y, C, {'K': 3}, {})
        state = initialize_state(ctx['init_key'], ctx['Y'], ctx['J'], user_config['prior'],
                                 ctx['prior_arrays'], user_config['mcmc'])
        dump = tmp_path / "failure.npz"
        params = RunParams(NBURN=1, NSAVE=1, NSKIP=1, NDISPLAY=0, SEED=0, DUMP_PATH=str(dump))
        error = SamplerInstabilityError("NaN label probabilities", state=state)

        _handle_failure(error, state, 17, params)

        assert error.sweep == 17
        loaded = load_state_dump(dump)
        assert loaded['sweep'] == 17
        assert "NaN" in loaded['message']
        np.testing.assert_array_equal(loaded['state'].Z, np.asarray(state.Z))



class TestDiagnostics:

    def test_clean_chain(self, two_group_chain):
        chain, _ = two_group_chain
        diagnostics = diagnose_chain(chain)
        assert diagnostics['issues'] == []
        assert "Saved draws: 10" in diagnostics['info']
        assert "Total sweeps: 40" in diagnostics['info']


class TestSeparatedGroups:
    """
    Two groups of 500 observations in 4 dimensions, N(0, I) and N(3·1, I),
    K=10 with default priors, 200 burn-in and 100 saved sweeps.
    """

    @pytest.fixture(scope="class")
    def separated(self):
        rng = np.random.default_rng(8)
        Y = np.vstack([rng.normal(0.0, 1.0, size=(500, 4)), rng.normal(3.0, 1.0, size=(500, 4))])
        C = np.repeat([1, 2], 500)
        chain = fit(Y, C, prior={'K': 10}, mcmc={'nburn': 200, 'nsave': 100, 'ndisplay': 0, 'seed': 4})
        return Y, C, chain

    def test_groups_use_different_components(self, separated):
        Y, C, chain = separated
        for i in range(chain.n_saved):
            Z = np.asarray(chain.draws.Z[i])
            first = np.bincount(Z[C == 1]).argmax()
            second = np.bincount(Z[C == 2]).argmax()
            assert first != second
            assert np.mean(Z[C == 2] == first) < 0.05

    def test_rho_near_zero(self, separated):
        """No component is common to both groups, so the shared mass vanishes."""
        _, _, chain = separated
        low, high = np.quantile(np.asarray(chain.draws.rho), [0.025, 0.975])
        assert 0.0 <= low <= high < 0.05

    def test_group_separation_recovered(self, separated):
        Y, C, chain = separated
        gaps = []
        for i in range(chain.n_saved):
            state = chain.state(i)
            fitted = np.asarray(state.mu)[np.asarray(state.Z)]
            gaps.append(fitted[C == 2].mean(axis=0) - fitted[C == 1].mean(axis=0))
        low, high = np.quantile(np.array(gaps), [0.025, 0.975], axis=0)
        assert np.all(low < 3.0 + 0.3) and np.all(high > 3.0 - 0.3)
        np.testing.assert_allclose(np.mean(gaps, axis=0), 3.0, atol=0.3)

    def test_group_means_recovered(self, separated):
        Y, C, chain = separated
        state = chain.state(chain.n_saved - 1)
        fitted = np.asarray(state.mu)[np.asarray(state.Z)]
        for j in (1, 2):
            np.testing.assert_allclose(fitted[C == j].mean(axis=0), Y[C == j].mean(axis=0), atol=0.5)


class TestFallbackLogging:
    """The driver logs uniform-fallback label draws per sweep and at the end."""

    def _setup(self, two_group_data, threshold):
        Y, C, _ = two_group_data
        user_config, ctx = configure_sampler(
            Y, C, {'K': 3},
            {'nburn': 2, 'nsave': 1, 'ndisplay': 0, 'fallback_warning_threshold': threshold},
        )
        state = initialize_state(ctx['init_key'], ctx['Y'], ctx['J'], user_config['prior'],
                                 ctx['prior_arrays'], user_config['mcmc'])
        return ctx, state

    @staticmethod
    def _sweep_with_fallbacks(n_fallback):
        def sweep(key, Y, C, J, state, prior, run_params):
            return state, key, SweepInfo(n_fallback=n_fallback, n_merged=0)
        return sweep

    def test_warnings_logged(self, two_group_data, caplog):
        ctx, state = self._setup(two_group_data, threshold=1)
        with patch("cremid.mcmc.backend.gibbs_sweep", self._sweep_with_fallbacks(2)):
            with caplog.at_level(logging.WARNING, logger='cremid'):
                _, fallback_counts, _, _ = _run_sweeps(
                    ctx['master_key'], ctx['Y'], ctx['C'], ctx['J'], state,
                    ctx['prior_arrays'], ctx['run_params'],
                )

        np.testing.assert_array_equal(fallback_counts, [2, 2, 2])
        per_sweep = [r for r in caplog.records if "uniform fallback" in r.getMessage()]
        assert len(per_sweep) == 3
        assert "Sweep 0: 2 label(s)" in per_sweep[0].getMessage()
        assert "6 label draw(s) fell back to uniform probabilities over 3 sweep(s)" in caplog.text

    def test_below_threshold_only_summary(self, two_group_data, caplog):
        ctx, state = self._setup(two_group_data, threshold=5)
        with patch("cremid.mcmc.backend.gibbs_sweep", self._sweep_with_fallbacks(2)):
            with caplog.at_level(logging.WARNING, logger='cremid'):
                _run_sweeps(ctx['master_key'], ctx['Y'], ctx['C'], ctx['J'], state,
                            ctx['prior_arrays'], ctx['run_params'])

        assert "uniform fallback" not in caplog.text
        assert "6 label draw(s) fell back" in caplog.text

    def test_clean_run_silent(self, two_group_data, caplog):
        ctx, state = self._setup(two_group_data, threshold=1)
        with patch("cremid.mcmc.backend.gibbs_sweep", self._sweep_with_fallbacks(0)):
            with caplog.at_level(logging.WARNING, logger='cremid'):
                _run_sweeps(ctx['master_key'], ctx['Y'], ctx['C'], ctx['J'], state,
                            ctx['prior_arrays'], ctx['run_params'])

        assert "fell back" not in caplog.text


class TestShortRun:

    def test_single_saved_sweep(self):
        """nburn=0, nsave=1 still yields a usable draw."""
        rng = np.random.default_rng(5)
        Y = rng.multivariate_normal([1.0, 1.0], np.eye(2) * 0.5, size=400)
        chain = fit(Y, np.ones(400, dtype=int), prior={'K': 1},
                    mcmc={'nburn': 0, 'nsave': 1, 'nskip': 1, 'ndisplay': 0})
        assert chain.n_saved == 1
        state = chain.state(0)
        np.testing.assert_allclose(np.asarray(state.mu[0]), Y.mean(axis=0), atol=0.2)
        np.testing.assert_allclose(np.asarray(state.Sigma[0]), np.cov(Y, rowvar=False), atol=0.2)
