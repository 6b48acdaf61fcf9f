from __future__ import annotations

import logging
import os

import pytest

from femkit.core.config import (
    AnalysisSettings,
    AssemblyStrategy,
    ConstraintStrategy,
    SolveConfig,
    SolverBackendKind,
)


class TestAnalysisSettings:
    def test_default_config(self):
        settings = AnalysisSettings()
        assert settings.get("solver.backend") == "direct"
        assert settings.get("constraints.penalty_magnitude") == 1.0e8
        assert settings.get("assembly.strategy") == "reduction"

    def test_get_missing_key_returns_default(self):
        settings = AnalysisSettings()
        assert settings.get("solver.nonexistent", "fallback") == "fallback"
        assert settings.get("nope.deeper.still") is None

    def test_set_creates_nested_keys(self):
        settings = AnalysisSettings()
        settings.set("solver.tolerance", 1e-6)
        settings.set("extra.section.value", 3)
        assert settings.get("solver.tolerance") == 1e-6
        assert settings.get("extra.section.value") == 3

    def test_yaml_override_is_deep_merged(self, tmp_path):
        cfg_file = tmp_path / "analysis.yaml"
        cfg_file.write_text(
            "solver:\n"
            "  backend: iterative\n"
            "  method: gmres\n"
            "assembly:\n"
            "  n_workers: 4\n"
        )
        settings = AnalysisSettings(config_path=str(cfg_file))
        assert settings.get("solver.backend") == "iterative"
        assert settings.get("solver.method") == "gmres"
        # untouched keys keep their defaults
        assert settings.get("solver.max_iterations") == 10000
        assert settings.get("assembly.chunk_size") == 512

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = AnalysisSettings(config_path=str(tmp_path / "missing.yaml"))
        assert settings.get("solver.backend") == "direct"

    def test_empty_file_uses_defaults(self, tmp_path):
        cfg_file = tmp_path / "empty.yaml"
        cfg_file.write_text("")
        settings = AnalysisSettings(config_path=str(cfg_file))
        assert settings.get("constraints.strategy") == "elimination"

    def test_to_solve_config(self, tmp_path):
        cfg_file = tmp_path / "analysis.yaml"
        cfg_file.write_text(
            "constraints:\n"
            "  strategy: penalty\n"
            "  penalty_magnitude: 1.0e6\n"
            "solver:\n"
            "  backend: iterative\n"
            "  tolerance: 1.0e-8\n"
            "  time_budget_s: 2.5\n"
            "assembly:\n"
            "  strategy: coloring\n"
        )
        config = AnalysisSettings(config_path=str(cfg_file)).to_solve_config()
        assert config.constraint_strategy is ConstraintStrategy.PENALTY
        assert config.penalty_magnitude == pytest.approx(1.0e6)
        assert config.solver_backend is SolverBackendKind.ITERATIVE
        assert config.iterative_tolerance == pytest.approx(1.0e-8)
        assert config.time_budget_s == pytest.approx(2.5)
        assert config.assembly_strategy is AssemblyStrategy.COLORING

    def test_from_dict_does_not_touch_defaults(self):
        settings = AnalysisSettings.from_dict({"assembly": {"n_workers": 8}})
        assert settings.get("assembly.n_workers") == 8
        assert settings.get("assembly.strategy") == "reduction"
        assert AnalysisSettings().get("assembly.n_workers") == 1

    def test_non_mapping_file_rejected(self, tmp_path):
        cfg_file = tmp_path / "list.yaml"
        cfg_file.write_text("- solver\n- assembly\n")
        with pytest.raises(ValueError, match="mapping"):
            AnalysisSettings(config_path=str(cfg_file))

    def test_run_logger_disabled_by_default(self):
        assert AnalysisSettings().run_logger() is None

    def test_run_logger_from_logging_section(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        settings = AnalysisSettings.from_dict({"logging": {"dir": log_dir, "level": "DEBUG"}})
        run_logger = settings.run_logger()
        try:
            assert run_logger.log_dir == log_dir
            assert os.path.exists(os.path.join(log_dir, "app.log"))
            assert run_logger.app.level == logging.DEBUG
        finally:
            run_logger.close()


class TestSolveConfig:
    def test_defaults(self):
        config = SolveConfig()
        assert config.constraint_strategy is ConstraintStrategy.ELIMINATION
        assert config.solver_backend is SolverBackendKind.DIRECT
        assert config.n_workers == 1
        assert config.time_budget_s is None

    def test_strings_are_coerced_to_enums(self):
        config = SolveConfig(constraint_strategy="penalty", solver_backend="iterative",
                             assembly_strategy="coloring")
        assert config.constraint_strategy is ConstraintStrategy.PENALTY
        assert config.solver_backend is SolverBackendKind.ITERATIVE
        assert config.assembly_strategy is AssemblyStrategy.COLORING

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"constraint_strategy": "lagrange"}, "constraint_strategy"),
            ({"solver_backend": "gpu"}, "solver_backend"),
            ({"assembly_strategy": "locks"}, "assembly_strategy"),
            ({"iterative_method": "minres"}, "iterative_method"),
            ({"preconditioner": "ilu"}, "preconditioner"),
            ({"penalty_magnitude": 0.0}, "penalty_magnitude"),
            ({"iterative_tolerance": -1.0}, "iterative_tolerance"),
            ({"max_iterations": 0}, "max_iterations"),
            ({"time_budget_s": 0.0}, "time_budget_s"),
            ({"n_workers": 0}, "n_workers"),
            ({"chunk_size": 0}, "chunk_size"),
        ],
    )
    def test_invalid_values_rejected(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            SolveConfig(**kwargs)
