import os, tempfile
import unittest as test

from dams.services import RepositoryServices
from dams.store.inmem import InMemoryResourceStore
from dams.store.fsbased import FSBasedResourceStore
from dams.tasks import InlineTaskQueue, ProcessTaskQueue
from dams.notifier import Notifier, WebSocketNotifier
from dams.config import ConfigurationException

tmpdir = None
def setUpModule():
    global tmpdir
    tmpdir = tempfile.TemporaryDirectory(prefix="_test_services.")

def tearDownModule():
    if tmpdir:
        tmpdir.cleanup()

class TestRepositoryServices(test.TestCase):

    def setUp(self):
        self.cfg = {
            "binaries": { "root_dir": os.path.join(tmpdir.name, "bin") },
            "locking": { "lock_dir": os.path.join(tmpdir.name, "locks"), "timeout": 2 }
        }

    def test_defaults(self):
        svcs = RepositoryServices(self.cfg)
        self.assertIsInstance(svcs.store, InMemoryResourceStore)
        self.assertTrue(os.path.isdir(self.cfg['binaries']['root_dir']))
        self.assertEqual(svcs.locks.timeout, 2.0)
        self.assertIsInstance(svcs.tasks, InlineTaskQueue)
        self.assertIs(svcs.tasks.services, svcs)
        self.assertIs(type(svcs.notifier), Notifier)
        self.assertTrue(svcs.callbacks.is_enabled("after_destroy"))
        self.assertEqual(svcs.ability_config, {})

    def test_configured(self):
        os.makedirs(os.path.join(tmpdir.name, "db"), exist_ok=True)
        self.cfg.update({
            "store": { "type": "fsbased", "root_dir": os.path.join(tmpdir.name, "db") },
            "tasks": { "type": "process", "queue_dir": os.path.join(tmpdir.name, "queues") },
            "notifier": { "service_endpoint": "ws://localhost:8765" },
            "callbacks": { "enabled": ["after_destroy"] },
            "ability": { "superusers": ["admin"] }
        })
        svcs = RepositoryServices(self.cfg)
        self.assertIsInstance(svcs.store, FSBasedResourceStore)
        self.assertIsInstance(svcs.tasks, ProcessTaskQueue)
        self.assertIs(svcs.tasks.jobcfg, self.cfg)
        self.assertIsInstance(svcs.notifier, WebSocketNotifier)
        self.assertFalse(svcs.callbacks.is_enabled("after_create_fileset"))
        self.assertEqual(svcs.ability_config, {"superusers": ["admin"]})

        svcs = RepositoryServices.from_config(self.cfg, inline_tasks=True)
        self.assertIsInstance(svcs.tasks, InlineTaskQueue)
        self.assertEqual(self.cfg['tasks']['type'], "process")

    def test_bad_config(self):
        with self.assertRaises(ConfigurationException):
            RepositoryServices({})
        self.cfg['store'] = {"type": "goob"}
        with self.assertRaises(ConfigurationException):
            RepositoryServices(self.cfg)
        self.cfg['store'] = {"type": "fsbased"}
        with self.assertRaises(ConfigurationException):
            RepositoryServices(self.cfg)
        self.cfg['store'] = {}
        self.cfg['tasks'] = {"type": "process"}
        with self.assertRaises(ConfigurationException):
            RepositoryServices(self.cfg)


if __name__ == '__main__':
    test.main()
