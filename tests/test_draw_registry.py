import unittest

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from luckyshare.draw.algorithms import AlgorithmRegistry, TIMESTAMP_SUM_MOD
from luckyshare.draw.registry import DrawAlgorithmRegistry
from luckyshare.errors import (
    AlgorithmConfigurationError,
    AlgorithmNotFoundError,
    ValidationError,
)
from luckyshare.models import Base, DrawAlgorithmConfig


class DrawAlgorithmRegistryTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)

    def tearDown(self):
        self.engine.dispose()

    def test_ensure_builtin_algorithms_seeds_default_once(self):
        with self.Session.begin() as session:
            created = DrawAlgorithmRegistry(session).ensure_builtin_algorithms()
            self.assertEqual(
                sorted(row.name for row in created),
                ["sha256_timestamp_mod", "timestamp_sum_mod"],
            )

        with self.Session.begin() as session:
            registry = DrawAlgorithmRegistry(session)
            self.assertEqual(registry.ensure_builtin_algorithms(), [])
            default = DrawAlgorithmConfig.get_default(session)
            self.assertEqual(default.name, "timestamp_sum_mod")
            self.assertTrue(default.is_active)
            sha = registry.get_config("sha256_timestamp_mod")
            self.assertFalse(sha.is_active)
            self.assertFalse(sha.is_default)
            self.assertEqual(
                [row.name for row in registry.list_algorithms(active_only=True)],
                ["timestamp_sum_mod"],
            )

    def test_get_active_without_configuration(self):
        with self.Session() as session:
            with self.assertRaises(AlgorithmConfigurationError):
                DrawAlgorithmRegistry(session).get_active()

    def test_get_active_requires_registered_code(self):
        with self.Session.begin() as session:
            DrawAlgorithmRegistry(session).ensure_builtin_algorithms()

        with self.Session() as session:
            registry = DrawAlgorithmRegistry(session, algorithms=AlgorithmRegistry())
            with self.assertRaises(AlgorithmConfigurationError):
                registry.get_active()

    def test_switch_default_algorithm(self):
        with self.Session.begin() as session:
            registry = DrawAlgorithmRegistry(session)
            registry.ensure_builtin_algorithms()

            with self.assertRaises(ValidationError):
                registry.select_default("sha256_timestamp_mod")

            registry.update_config("sha256_timestamp_mod", {"seed": "abc"})
            registry.set_active("sha256_timestamp_mod", True)
            row = registry.select_default("sha256_timestamp_mod")
            self.assertTrue(row.is_default)

            # the previous default is an ordinary active algorithm now
            registry.set_active("timestamp_sum_mod", False)

        with self.Session() as session:
            defaults = session.scalar(
                select(func.count(DrawAlgorithmConfig.id)).where(
                    DrawAlgorithmConfig.is_default.is_(True)
                )
            )
            self.assertEqual(defaults, 1)
            selection = DrawAlgorithmRegistry(session).get_active()
            self.assertEqual(selection.name, "sha256_timestamp_mod")
            self.assertEqual(selection.version, 2)
            self.assertEqual(selection.config, {"seed": "abc"})

    def test_default_cannot_be_deactivated(self):
        with self.Session.begin() as session:
            registry = DrawAlgorithmRegistry(session)
            registry.ensure_builtin_algorithms()
            with self.assertRaises(ValidationError):
                registry.set_active("timestamp_sum_mod", False)

    def test_update_config_bumps_version(self):
        with self.Session.begin() as session:
            registry = DrawAlgorithmRegistry(session)
            registry.ensure_builtin_algorithms()
            row = registry.update_config("timestamp_sum_mod", {"note": "audited"})
            self.assertEqual(row.version, 2)
            row = registry.update_config("timestamp_sum_mod", {"note": "audited twice"})
            self.assertEqual(row.version, 3)
            self.assertEqual(row.to_dict()["config"], {"note": "audited twice"})

    def test_register_config(self):
        algorithms = AlgorithmRegistry()
        algorithms.register(TIMESTAMP_SUM_MOD)
        with self.Session.begin() as session:
            registry = DrawAlgorithmRegistry(session, algorithms=algorithms)
            row = registry.register_config("timestamp_sum_mod", is_active=True)
            self.assertEqual(row.formula, TIMESTAMP_SUM_MOD.formula)
            self.assertFalse(row.is_default)

            with self.assertRaises(ValidationError):
                registry.register_config("timestamp_sum_mod")
            with self.assertRaises(AlgorithmNotFoundError):
                registry.register_config("sha256_timestamp_mod")

    def test_unknown_configuration(self):
        with self.Session() as session:
            with self.assertRaises(AlgorithmNotFoundError):
                DrawAlgorithmRegistry(session).get_config("nope")


if __name__ == "__main__":
    unittest.main()
