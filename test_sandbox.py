import asyncio
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from roundtable.errors import SandboxError
from roundtable.pyworker import UnsafeCodeError, handle_message, run_code
from roundtable.sandbox import SandboxWorker, worker_env


class TestRunCode(unittest.TestCase):

    def test_last_expression_is_the_result(self):
        self.assertEqual(run_code("x = 2\nx * 21", None), 42)

    def test_data_is_a_global(self):
        self.assertEqual(run_code("len(data['rows'])", {"rows": [1, 2, 3]}), 3)

    def test_context_values_are_globals(self):
        self.assertEqual(run_code("threshold + 1", None, {"threshold": 9}), 10)

    def test_statement_only_code_returns_none(self):
        self.assertIsNone(run_code("x = 1", None))

    def test_globals_do_not_leak_between_runs(self):
        run_code("leftover = 1", None)
        response = handle_message({"id": "a", "code": "leftover", "data": None})
        self.assertEqual(response["id"], "a")
        self.assertIn("NameError", response["error"])

    def test_exception_becomes_error_response(self):
        response = handle_message({"id": "b", "code": "1 / 0", "data": None})

        self.assertEqual(response, {"id": "b", "error": "ZeroDivisionError: division by zero"})

    def test_printing_does_not_corrupt_result(self):
        response = handle_message({"id": "c", "code": "print('noise')\n5", "data": None})

        self.assertEqual(response, {"id": "c", "result": 5})

    def test_analysis_libraries_can_be_imported(self):
        code = (
            "import json\n"
            "import numpy as np\n"
            "from pandas import DataFrame\n"
            "json.dumps(int(np.int64(len(DataFrame({'a': [1, 2]})))))"
        )

        self.assertEqual(run_code(code, None), "2")

    def test_environment_cannot_be_read(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-secret"}):
            response = handle_message({
                "id": "d", "code": "import os\nos.environ.get('OPENROUTER_API_KEY')", "data": None,
            })

        self.assertEqual(response, {"id": "d", "error": "UnsafeCodeError: Forbidden import: os"})

    def test_open_is_rejected(self):
        directory = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, directory, ignore_errors=True)
        target = os.path.join(directory, "written.txt")

        response = handle_message({"id": "e", "code": f"open({target!r}, 'w').write('x')", "data": None})

        self.assertEqual(response["error"], "UnsafeCodeError: Forbidden name: open")
        self.assertFalse(os.path.exists(target))

    def test_escapes_through_builtins_are_rejected(self):
        for code in (
            "__import__('os').environ",
            "().__class__.__bases__[0].__subclasses__()",
            "import pandas as pd\npd.read_csv('/etc/passwd')",
            "from subprocess import run",
        ):
            with self.subTest(code=code):
                with self.assertRaises(UnsafeCodeError):
                    run_code(code, None)

    def test_builtins_are_restricted_at_runtime(self):
        response = handle_message({"id": "f", "code": "dir()", "data": None})

        self.assertEqual(response["error"], "NameError: name 'dir' is not defined")


class TestWorkerEnvironment(unittest.TestCase):

    def test_secrets_are_not_passed_to_worker(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-secret", "PATH": "/usr/bin"}):
            env = worker_env()

        self.assertNotIn("OPENROUTER_API_KEY", env)
        self.assertEqual(env["PATH"], "/usr/bin")
        self.assertIn("PYTHONPATH", env)


class TestSandboxWorker(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.worker = SandboxWorker(timeout=30)

    async def asyncTearDown(self):
        await self.worker.close()

    async def test_runs_pandas_code(self):
        code = (
            "import pandas as pd\n"
            "df = pd.DataFrame(data['trials'])\n"
            "{'average_duration_days': float(df['duration_days'].mean())}"
        )
        data = {"trials": [{"duration_days": 10}, {"duration_days": 20}, {"duration_days": 30}]}

        response = await self.worker.run(code, data)

        self.assertTrue(response.ok)
        self.assertEqual(response.result, {"average_duration_days": 20.0})

    async def test_dataframe_result_is_serialized(self):
        code = "import pandas as pd\npd.DataFrame({'a': [1, 2]})"

        response = await self.worker.run(code, None)

        self.assertEqual(response.result, [{"a": 1}, {"a": 2}])

    async def test_interpreter_error_is_structured(self):
        response = await self.worker.run("raise ValueError('bad column')", None)

        self.assertFalse(response.ok)
        self.assertEqual(response.error, "ValueError: bad column")

    async def test_unsafe_code_is_refused_by_worker(self):
        response = await self.worker.run("import os\nos.environ", None)

        self.assertEqual(response.error, "UnsafeCodeError: Forbidden import: os")

    async def test_concurrent_requests_are_correlated(self):
        responses = await asyncio.gather(*(self.worker.run(f"{i} * 10", None) for i in range(5)))

        self.assertEqual([r.result for r in responses], [0, 10, 20, 30, 40])
        self.assertEqual(len({r.id for r in responses}), 5)

    async def test_timeout_restarts_worker(self):
        with self.assertRaises(SandboxError) as ctx:
            await self.worker.run("while True:\n    pass", None, timeout=1)
        self.assertIn("timed out", str(ctx.exception))

        response = await self.worker.run("'alive'", None)
        self.assertEqual(response.result, "alive")

    async def test_cancelled_request_stops_worker(self):
        await self.worker.run("1", None)
        task = asyncio.create_task(self.worker.run("while True:\n    pass", None))
        await asyncio.sleep(0.5)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(self.worker.running)

        # A worker still spinning on the abandoned loop would time out here
        response = await self.worker.run("'alive'", None, timeout=10)
        self.assertEqual(response.result, "alive")

    async def test_missing_interpreter_is_sandbox_error(self):
        worker = SandboxWorker(python="/nonexistent/python", timeout=5)

        with self.assertRaises(SandboxError) as ctx:
            await worker.run("1", None)
        self.assertIn("could not be started", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
