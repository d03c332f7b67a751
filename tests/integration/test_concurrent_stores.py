import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from mathsteps.api.history import HistoryLog
from mathsteps.api.runtime import ResultCache
from mathsteps.state import HistoryItem, Result, Step


class ConcurrentStoresTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.history_file = Path(self._tmpdir.name) / "history.json"

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_parallel_puts_get_distinct_ids(self) -> None:
        cache = ResultCache()
        result = Result.of([Step(title="T", content="C")])
        with ThreadPoolExecutor(max_workers=8) as pool:
            task_ids = list(pool.map(lambda _: cache.put(result), range(200)))
        self.assertEqual(len(set(task_ids)), 200)
        self.assertEqual(len(cache), 200)
        self.assertIs(cache.get(task_ids[0]), result)

    def test_parallel_history_writes_keep_file_consistent(self) -> None:
        log = HistoryLog(self.history_file)
        result = Result.of([Step(title="T", content="C")])

        def add_and_update(index: int) -> str:
            item_id = log.add(HistoryItem(kind="text", text="p{}".format(index), at=index + 1))
            log.update_result(item_id, result, "task-{}".format(index))
            log.list()
            return item_id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(add_and_update, range(40)))

        self.assertEqual(len(set(ids)), 40)
        self.assertEqual(len(log), 40)
        reloaded = HistoryLog(self.history_file).list()
        self.assertEqual([item.at for item in reloaded], list(range(40, 0, -1)))
        self.assertTrue(all(item.result == result for item in reloaded))


if __name__ == "__main__":
    unittest.main()
