import os, sys, json, logging, tempfile, time, queue, asyncio, shutil
from pathlib import Path
import unittest as test

import dams.jobmgt as jobmgt

loghdlr = None
rootlog = None
tmpdir  = None
def setUpModule():
    global loghdlr
    global rootlog
    global tmpdir
    tmpdir = tempfile.TemporaryDirectory(prefix="_test_jobmgt.")
    rootlog = logging.getLogger()
    rootlog.setLevel(logging.DEBUG)
    loghdlr = logging.FileHandler(os.path.join(tmpdir.name,"test_jobmgt.log"))
    loghdlr.setLevel(logging.DEBUG)
    loghdlr.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    rootlog.addHandler(loghdlr)

def tearDownModule():
    global loghdlr
    global tmpdir
    if loghdlr:
        if rootlog:
            rootlog.removeHandler(loghdlr)
            loghdlr.flush()
            loghdlr.close()
        loghdlr = None
    if tmpdir:
        tmpdir.cleanup()

class TestJob(test.TestCase):

    def setUp(self):
        self.cfg = {"store": {"type": "fsbased"}}
        self.args = ["--notify"]
        self.job = jobmgt.Job("dams.jobs.ingest", "dams0:io0001", self.cfg, self.args)

    def tearDown(self):
        for jf in [f for f in os.listdir(tmpdir.name) if f.endswith(".json")]:
            os.unlink(os.path.join(tmpdir.name, jf))

    def test_ctor(self):
        self.assertEqual(self.job.info['execmodule'], "dams.jobs.ingest")
        self.assertEqual(self.job.info['dataid'], "dams0:io0001")
        self.assertEqual(self.job.info['config'], self.cfg)
        self.assertEqual(self.job.info['args'], self.args)
        self.assertTrue(isinstance(self.job.info['reqtime'], float))
        self.assertGreater(self.job.request_time, 0)
        self.assertIsNone(self.job.source)
        self.assertEqual(self.job.priority, 0)
        self.assertEqual(self.job.data_id, "dams0:io0001")
        self.assertFalse(self.job.succeeded)
        self.assertEqual(self.job.errors, [])

    def test_update_state(self):
        self.assertEqual(self.job.state, jobmgt.PENDING)
        self.job.update_state(jobmgt.RUNNING)
        self.assertEqual(self.job.state, jobmgt.RUNNING)

        with self.assertRaises(ValueError):
            self.job.update_state(50)

    def test_cmp(self):
        other = jobmgt.Job("dams.jobs.ingest", "dams0:io0002", self.cfg, self.args)
        self.assertTrue(self.job < other)
        self.assertTrue(other > self.job)
        self.assertTrue(other <= other)
        self.assertEqual(other, other)
        self.assertNotEqual(self.job, other)

        self.job.priority = -5
        self.assertTrue(self.job > other)

        q = queue.PriorityQueue()
        q.put_nowait(self.job)
        q.put_nowait(other)
        self.assertIs(q.get(), other)
        self.assertIs(q.get(), self.job)

    def test_mark_complete(self):
        self.job.mark_running(345)
        self.assertEqual(self.job.state, jobmgt.RUNNING)
        self.assertEqual(self.job.info['pid'], 345)

        self.job.mark_complete(1, time.time(), 2.0, "tired")
        self.assertEqual(self.job.state, jobmgt.EXITED)
        self.assertEqual(self.job.info['exitcode'], 1)
        self.assertEqual(self.job.info['runtime'], 2.0)
        self.assertEqual(self.job.errors, ["tired"])
        self.assertFalse(self.job.succeeded)

        self.job.mark_running(1001)
        self.assertNotIn('exitcode', self.job.info)
        self.assertNotIn('errors', self.job.info)
        self.job.mark_complete(0, time.time())
        self.assertTrue(self.job.succeeded)
        self.assertNotIn('runtime', self.job.info)

    def test_mark_killed(self):
        self.job.mark_killed(time.time(), 2.0, "killed")
        self.assertEqual(self.job.state, jobmgt.KILLED)
        self.assertEqual(self.job.info['exitcode'], -1)
        self.assertEqual(self.job.errors, ["killed"])

    def test_relaunch(self):
        self.job.enable_relaunch(True)
        self.assertIsNone(self.job.info.get('relaunch'))
        self.job.update_state(jobmgt.RUNNING)
        self.assertIsNone(self.job.pop_relaunch_job())

        self.job.mark_relaunch(["--notify", "--again"], priority=3)
        self.assertTrue(self.job.info.get('relaunch'))
        relaunch = self.job.pop_relaunch_job()
        self.assertIsNotNone(relaunch)
        self.assertFalse(self.job.info.get('relaunch'))
        self.assertEqual(relaunch.state, jobmgt.PENDING)
        self.assertEqual(relaunch.info['args'], ["--notify", "--again"])
        self.assertEqual(relaunch.priority, 3)
        self.assertEqual(relaunch.data_id, "dams0:io0001")

    def test_file(self):
        self.job.mark_running(333)
        self.assertEqual(str(jobmgt.job_state_file(tmpdir.name, "a/b")),
                         os.path.join(tmpdir.name, "a_b.json"))
        jobfile = jobmgt.job_state_file(tmpdir.name, self.job.data_id)
        self.job.save_to(jobfile)
        self.assertEqual(self.job.source, jobfile)

        with open(jobfile) as fd:
            jobdata = json.load(fd)
        self.assertEqual(jobdata['state'], jobmgt.RUNNING)    
        self.assertEqual(jobdata['pid'], 333)
        self.assertEqual(jobdata['execmodule'], "dams.jobs.ingest")
        self.assertEqual(jobdata['config'], self.cfg)

        job = jobmgt.Job.from_state_file(str(jobfile))
        self.assertEqual(job.info['dataid'], "dams0:io0001")
        self.assertEqual(job.info['args'], self.args)
        self.assertEqual(job.state, jobmgt.RUNNING)    
        self.assertEqual(str(job.source), str(jobfile))


class TestJobRunner(test.TestCase):

    def setUp(self):
        self.jobdir = Path(tmpdir.name) / "queue"
        os.mkdir(self.jobdir)
        self.job1 = jobmgt.Job("dams.jobmgt.testproc", "dams0:XXXX")
        self.job2 = jobmgt.Job("dams.jobmgt.testproc", "dams0:YYYY")
        self.queue = queue.PriorityQueue()
        self.queue.put_nowait(self.job1)
        self.queue.put_nowait(self.job2)
        self.runner = jobmgt.JobRunner("test", self.jobdir, self.queue)

    def tearDown(self):
        if self.jobdir.exists():
            shutil.rmtree(str(self.jobdir))

    def test_ctor(self):
        self.assertEqual(self.runner.qname, "test")
        self.assertEqual(self.runner.jdir, self.jobdir)
        self.assertIsNone(self.runner.runthread)
        self.assertEqual(self.runner.cfg, {})
        self.assertFalse(self.runner.is_running())

    def test_launch_job(self):
        jobfile = jobmgt.job_state_file(self.jobdir, self.job1.data_id)
        self.job1.save_to(jobfile)
        self.runner.cfg['capture_logging'] = True
        p = asyncio.run(self.runner._launch_job(self.job1))

        self.assertGreater(p.pid, 0)
        self.assertEqual(p.returncode, 0)

        with open(jobfile) as fd:
            jdata = json.load(fd)
        self.assertEqual(jdata['pid'], p.pid)
        self.assertEqual(jdata['exitcode'], 0)
        self.assertEqual(jdata['state'], jobmgt.EXITED)

    def test_failed_job(self):
        job = jobmgt.Job("dams.jobmgt.testproc", "dams0:FAIL", args=["--fail"])
        jobfile = jobmgt.job_state_file(self.jobdir, job.data_id)
        job.save_to(jobfile)
        p = asyncio.run(self.runner._launch_job(job))
        self.assertEqual(p.returncode, 11)

        job = jobmgt.Job.from_state_file(jobfile)
        self.assertEqual(job.state, jobmgt.EXITED)
        self.assertEqual(job.info['exitcode'], 11)
        self.assertFalse(job.succeeded)
        self.assertIn("requested failure", job.errors[0])

    def test_trigger(self):
        self.job1.save_to(jobmgt.job_state_file(self.jobdir, self.job1.data_id))
        self.job2.save_to(jobmgt.job_state_file(self.jobdir, self.job2.data_id))
        self.assertEqual(self.runner.processed, 0)

        self.runner.trigger()
        self.runner.runthread.join(10)
        self.assertEqual(self.queue.qsize(), 0)
        self.assertEqual(self.runner.processed, 2)
        
    def test_run_logfile(self):
        self.job1.save_to(jobmgt.job_state_file(self.jobdir, self.job1.data_id))
        self.job2.save_to(jobmgt.job_state_file(self.jobdir, self.job2.data_id))

        self.runner.cfg['logdir'] = str(self.jobdir)
        self.runner._run()
        logfile = self.jobdir/"dams0_XXXX.log"
        self.assertTrue(logfile.is_file())
        with open(logfile) as fd:
            lines = fd.read()
        self.assertIn("fake processing started", lines)

class TestJobQueue(test.TestCase):

    def setUp(self):
        self.jobdir = Path(tmpdir.name) / "queue"
        os.mkdir(self.jobdir)
        self.jobq = jobmgt.JobQueue("test", self.jobdir, "dams.jobmgt.testproc")

    def tearDown(self):
        if self.jobdir.exists():
            shutil.rmtree(str(self.jobdir))

    def test_ctor(self):
        self.assertEqual(self.jobq.name, "test")
        self.assertEqual(self.jobq.qdir, self.jobdir)
        self.assertEqual(self.jobq.mod, "dams.jobmgt.testproc")
        self.assertEqual(self.jobq.processed, 0)
        self.assertEqual(self.jobq.pending, 0)

    def test_submit(self):
        self.jobq.submit("dams0:XX01", trigger=False)
        self.assertEqual(self.jobq.pending, 1)
        self.jobq.submit("dams0:XX02", priority=1, trigger=False)
        self.assertEqual(self.jobq.pending, 2)
        self.assertTrue((self.jobdir/"dams0:XX01.json").exists())

        job = self.jobq.get_job("dams0:XX01")
        self.assertEqual(job.data_id, "dams0:XX01")
        self.assertEqual(job.state, jobmgt.PENDING)
        self.assertEqual(job.info.get('execmodule'), "dams.jobmgt.testproc")
        self.assertIsNone(self.jobq.get_job("dams0:XX99"))

        # same request is coalesced
        self.jobq.submit("dams0:XX02", priority=1, trigger=False)
        self.assertEqual(self.jobq.pending, 2)
        job = self.jobq.get_job("dams0:XX02")
        self.assertTrue(not job.info.get('relaunch'))

        # different args means a relaunch
        self.jobq.submit("dams0:XX02", args=["1"], priority=1, trigger=False)
        self.assertEqual(self.jobq.pending, 2)
        job = self.jobq.get_job("dams0:XX02")
        self.assertTrue(job.info.get('relaunch'))

        self.jobq.run_queued()
        self.jobq.runner.runthread.join(10)
        self.assertEqual(self.jobq.pending, 0)
        self.assertEqual(self.jobq.processed, 3)

        job = self.jobq.get_job("dams0:XX02")
        self.assertTrue(not job.info.get('relaunch'))
        self.assertEqual(job.info.get('args'), ["1"])

        self.jobq.clean(0)
        self.assertTrue(not (self.jobdir/"dams0:XX01.json").exists())
        self.assertTrue(not (self.jobdir/"dams0:XX02.json").exists())

    def test_default_job_config(self):
        jobq = jobmgt.JobQueue("test", self.jobdir, "dams.jobmgt.testproc",
                               {"default_job_config": {"store": {"type": "fsbased", "root_dir": "/tmp"}}})
        job = jobq.submit("dams0:XX03", config={"store": {"root_dir": "/var"}}, trigger=False)
        self.assertEqual(job.info['config']['store'], {"type": "fsbased", "root_dir": "/var"})

    def test_restore_queue(self):
        job1 = jobmgt.Job("dams.jobmgt.testproc", "dams0:XXXX")
        job1.save_to(jobmgt.job_state_file(self.jobdir, "dams0:XXXX"))
        job2 = jobmgt.Job("dams.jobmgt.testproc", "dams0:YYYY")
        job2.mark_complete(0, time.time())
        job2.save_to(jobmgt.job_state_file(self.jobdir, "dams0:YYYY"))
        with open(self.jobdir/"garbage.json", 'w') as fd:
            fd.write("{ not json")

        (self.jobdir/"_restorer.json").unlink()
        self.jobq._restore_queue(False)
        self.assertEqual(self.jobq.pending, 1)
        self.assertFalse((self.jobdir/"garbage.json").exists())

    def test_is_running(self):
        job = jobmgt.Job("dams.jobmgt.testproc", "dams0:XXXX")
        self.assertFalse(self.jobq.is_running(job))
        job.mark_running(os.getpid())
        self.assertFalse(self.jobq.is_running(job))


if __name__ == '__main__':
    test.main()
