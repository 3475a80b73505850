import os, tempfile, threading, logging
from pathlib import Path
import unittest as test

from dams.actors.file_set import FileSetActor, assigns_visibility
from dams.services import RepositoryServices
from dams.store import Work, FileSet, UploadedFile, ContentDescriptor, ObjectNotFound
from dams.store.inmem import InMemoryResourceStore
from dams.locking import LockTimeoutError
from dams import jobmgt
from dams.utils.prov import Agent

loghdlr = None
rootlog = None
tmpdir  = None
def setUpModule():
    global loghdlr
    global rootlog
    global tmpdir
    tmpdir = tempfile.TemporaryDirectory(prefix="_test_file_set.")
    rootlog = logging.getLogger()
    loghdlr = logging.FileHandler(os.path.join(tmpdir.name,"test_file_set.log"))
    loghdlr.setLevel(logging.DEBUG)
    loghdlr.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    rootlog.addHandler(loghdlr)

def tearDownModule():
    global loghdlr
    if loghdlr:
        if rootlog:
            rootlog.removeHandler(loghdlr)
            loghdlr.flush()
            loghdlr.close()
        loghdlr = None
    if tmpdir:
        tmpdir.cleanup()

class SaveCountingStore(InMemoryResourceStore):
    """
    an in-memory store that records the identifiers of the resources it saves
    """
    def __init__(self, config=None):
        super(SaveCountingStore, self).__init__(config)
        self.saved = []

    def save(self, resource):
        out = super(SaveCountingStore, self).save(resource)
        self.saved.append(resource.id)
        return out

class RecordingNotifier(object):
    def __init__(self):
        self.notes = []
    def notify_user(self, user, event, subject_id, message, **extra):
        self.notes.append((user.actor, event, subject_id))

def _key_for(arg):
    if isinstance(arg, Agent):
        return arg.actor
    return getattr(arg, "id", arg)

def write_file(path, content):
    with open(path, 'w') as fd:
        fd.write(content)
    return str(path)

class FileSetActorTestBase(test.TestCase):

    def setUp(self):
        self.root = Path(tempfile.mkdtemp(dir=tmpdir.name))
        self.store = SaveCountingStore()
        self.notifier = RecordingNotifier()
        self.svcs = RepositoryServices({
            "binaries": { "root_dir": str(self.root / "bin") },
            "locking": { "lock_dir": str(self.root / "locks"), "timeout": 10 }
        }, store=self.store, notifier=self.notifier)
        self.user = Agent("dams", Agent.USER, "nstr1")
        self.events = []
        for hook in ("after_create_fileset", "after_revert_content", "after_update_content", "after_destroy"):
            self.svcs.callbacks.set(hook, self._recorder(hook))

        self.work = Work(title="My Thesis")
        self.work.apply_depositor_metadata(self.user)
        self.work.visibility = "open"
        self.store.save(self.work)

    def _recorder(self, hook):
        def record(*args):
            self.events.append((hook,) + tuple(_key_for(a) for a in args))
        return record

    def new_file_set(self, label):
        fs = FileSet(label=label)
        self.store.save(fs)
        return fs

    def actor_for(self, fs):
        return FileSetActor(fs, self.user, self.svcs)

class TestAttachToWork(FileSetActorTestBase):

    def test_sequential(self):
        a = self.new_file_set("a.txt")
        b = self.new_file_set("b.txt")
        self.assertTrue(self.actor_for(a).attach_to_work(self.work))
        self.assertTrue(self.actor_for(b).attach_to_work(self.work))

        self.assertEqual(self.work.member_ids, [a.id, b.id])
        self.assertEqual(self.store.find(self.work.id).member_ids, [a.id, b.id])
        self.assertEqual(self.store.find_parent(b), self.work)
        self.assertEqual(self.events, [("after_create_fileset", a.id, "nstr1"),
                                       ("after_create_fileset", b.id, "nstr1")])

    def test_stale_work_instance(self):
        a = self.new_file_set("a.txt")
        b = self.new_file_set("b.txt")
        stale = self.store.find(self.work.id)
        self.assertTrue(self.actor_for(a).attach_to_work(self.work))
        self.assertTrue(self.actor_for(b).attach_to_work(stale))
        self.assertEqual(self.store.find(self.work.id).member_ids, [a.id, b.id])

    def test_concurrent(self):
        n = 8
        filesets = [self.new_file_set("f%d.txt" % i) for i in range(n)]
        results = []
        start = threading.Event()
        def attach(fs):
            work = self.store.find(self.work.id)
            start.wait(5)
            results.append(self.actor_for(fs).attach_to_work(work))
        threads = [threading.Thread(target=attach, args=(fs,)) for fs in filesets]
        for t in threads:
            t.start()
        start.set()
        for t in threads:
            t.join()

        self.assertEqual(results, [True] * n)
        members = self.store.find(self.work.id).member_ids
        self.assertEqual(len(members), n)
        self.assertEqual(set(members), set(fs.id for fs in filesets))

    def test_representative(self):
        a = self.new_file_set("a.txt")
        b = self.new_file_set("b.txt")
        self.assertIsNone(self.work.representative_id)
        self.actor_for(a).attach_to_work(self.work)
        self.assertEqual(self.work.representative_id, a.id)
        self.assertEqual(self.work.thumbnail_id, a.id)

        self.actor_for(b).attach_to_work(self.work)
        work = self.store.find(self.work.id)
        self.assertEqual(work.representative_id, a.id)
        self.assertEqual(work.thumbnail_id, a.id)

    def test_visibility_inherited(self):
        fs = FileSet()
        actor = self.actor_for(fs)
        actor.create_metadata({})
        self.assertIsNone(fs.visibility)
        self.assertTrue(actor.attach_to_work(self.work))
        self.assertEqual(fs.visibility, "open")
        self.assertEqual(self.store.find(fs.id).visibility, "open")
        self.assertIn("public", self.store.find(fs.id).read_groups)

    def test_visibility_explicit(self):
        fs = FileSet(label="a.txt")
        actor = self.actor_for(fs)
        self.assertTrue(actor.create_metadata({"visibility": "restricted"}))
        self.assertEqual(fs.visibility, "restricted")
        self.assertTrue(actor.attach_to_work(self.work))
        self.assertEqual(self.store.find(fs.id).visibility, "restricted")

        fs = FileSet(label="b.txt", visibility="authenticated")
        self.assertTrue(self.actor_for(fs).attach_to_work(self.work, {"visibility": "authenticated"}))
        self.assertEqual(fs.visibility, "authenticated")

    def test_embargoed_work(self):
        work = Work(title="Secret")
        work.embargo = {"embargo_release_date": "2199-01-01T00:00:00+00:00",
                        "visibility_during_embargo": "restricted", "visibility_after_embargo": "open"}
        work.visibility = "embargo"
        self.store.save(work)
        fs = self.new_file_set("a.txt")
        self.assertTrue(self.actor_for(fs).attach_to_work(work))
        self.assertEqual(fs.visibility, "embargo")
        self.assertEqual(fs.embargo, work.embargo)

    def test_new_work(self):
        work = Work(title="Brand New")
        fs = self.new_file_set("a.txt")
        self.assertTrue(self.actor_for(fs).attach_to_work(work))
        self.assertTrue(work.id)
        self.assertTrue(work.persisted)
        self.assertEqual(self.store.find(work.id).member_ids, [fs.id])

    def test_duplicate_attach(self):
        fs = self.new_file_set("a.txt")
        self.assertTrue(self.actor_for(fs).attach_to_work(self.work))
        self.assertTrue(self.actor_for(fs).attach_to_work(self.work))
        self.assertEqual(self.store.find(self.work.id).member_ids, [fs.id, fs.id])

    def test_invalid_work(self):
        work = Work()
        fs = self.new_file_set("a.txt")
        self.assertFalse(self.actor_for(fs).attach_to_work(work, {}))
        self.assertFalse(self.store.exists(work.id))
        self.assertEqual(self.events, [])

    def test_deleted_work(self):
        fs = self.new_file_set("a.txt")
        work = self.store.find(self.work.id)
        self.store.delete(self.work)
        with self.assertRaises(ObjectNotFound):
            self.actor_for(fs).attach_to_work(work)
        # the lock was released
        with self.svcs.locks.lock_for(work.id, timeout=0.1):
            pass

    def test_lock_timeout(self):
        self.svcs.locks.timeout = 0.2
        fs = self.new_file_set("a.txt")
        held = threading.Event()
        done = threading.Event()
        def holder():
            with self.svcs.locks.lock_for(self.work.id):
                held.set()
                done.wait(5)
        t = threading.Thread(target=holder)
        t.start()
        try:
            held.wait(5)
            with self.assertRaises(LockTimeoutError):
                self.actor_for(fs).attach_to_work(self.work)
        finally:
            done.set()
            t.join()
        self.assertEqual(self.store.find(self.work.id).member_ids, [])
        self.assertEqual(self.work.member_ids, [])

    def test_callback_failure(self):
        def fail(*args):
            raise RuntimeError("oops")
        self.svcs.callbacks.set("after_create_fileset", fail)
        fs = self.new_file_set("a.txt")
        self.assertTrue(self.actor_for(fs).attach_to_work(self.work))
        self.assertEqual(self.store.find(self.work.id).member_ids, [fs.id])

class TestDestroy(FileSetActorTestBase):

    def setUp(self):
        super(TestDestroy, self).setUp()
        self.a = self.new_file_set("a.txt")
        self.b = self.new_file_set("b.txt")
        self.actor_for(self.a).attach_to_work(self.work)
        self.actor_for(self.b).attach_to_work(self.work)
        self.events = []

    def test_destroy_representative(self):
        self.assertTrue(self.actor_for(self.a).destroy())
        work = self.store.find(self.work.id)
        self.assertIsNone(work.representative_id)
        self.assertIsNone(work.thumbnail_id)
        self.assertEqual(work.member_ids, [self.b.id])
        self.assertFalse(self.store.exists(self.a.id))
        self.assertEqual(self.events, [("after_destroy", self.a.id, "nstr1")])

    def test_destroy_other(self):
        self.store.saved = []
        self.assertTrue(self.actor_for(self.b).destroy())
        work = self.store.find(self.work.id)
        self.assertEqual(work.representative_id, self.a.id)
        self.assertEqual(work.thumbnail_id, self.a.id)
        self.assertEqual(work.member_ids, [self.a.id])
        self.assertEqual(self.store.saved, [])
        self.assertFalse(self.store.exists(self.b.id))

    def test_destroy_purges_content(self):
        src = write_file(self.root / "a.txt", "hello")
        self.svcs.binaries.add_version(self.a.id, "original_file", src)
        self.assertTrue(self.actor_for(self.a).destroy())
        self.assertEqual(self.svcs.binaries.versions(self.a.id, "original_file"), [])

    def test_destroy_orphan(self):
        fs = self.new_file_set("c.txt")
        self.assertTrue(self.actor_for(fs).destroy())
        self.assertFalse(self.store.exists(fs.id))
        self.assertEqual(self.events, [("after_destroy", fs.id, "nstr1")])
        self.assertFalse(self.actor_for(FileSet()).destroy())

class TestContent(FileSetActorTestBase):

    def setUp(self):
        super(TestContent, self).setUp()
        self.src = write_file(self.root / "upload-1234", "%PDF-1.4 not really\n")

    def test_create_content_label(self):
        fs = FileSet()
        upload = UploadedFile(path=self.src, filename="thesis.pdf", user="nstr1")
        job = self.actor_for(fs).create_content(upload)
        self.assertEqual(fs.label, "thesis.pdf")
        self.assertEqual(fs.title, ["thesis.pdf"])
        self.assertTrue(fs.persisted)

        self.assertIsInstance(job, jobmgt.Job)
        self.assertEqual(job.info['execmodule'], "dams.jobs.ingest")
        self.assertTrue(job.succeeded)
        desc = self.store.find(job.data_id, ContentDescriptor)
        self.assertEqual(desc.file_set_id, fs.id)
        self.assertEqual(self.store.find(fs.id).files, {"original_file": "version1"})
        self.assertEqual(self.notifier.notes, [])

    def test_create_content_keeps_title(self):
        fs = FileSet(label="Final Report", title=["The Final Report"])
        self.actor_for(fs).create_content(self.src)
        self.assertEqual(fs.label, "Final Report")
        self.assertEqual(fs.title, ["The Final Report"])

    def test_create_content_fails(self):
        fs = FileSet(visibility="embargo")
        self.assertFalse(self.actor_for(fs).create_content(self.src))
        self.assertEqual(list(self.store.select(ContentDescriptor)), [])

    def test_create_content_from_url(self):
        self.work.read_users.append("reader")
        self.store.save(self.work)
        fs = FileSet(import_url="https://example.com/files/thesis.pdf")
        actor = self.actor_for(fs)
        actor.create_metadata({"visibility": "restricted"})
        self.assertTrue(actor.attach_to_work(self.work))
        self.assertEqual(fs.visibility, "restricted")

        job = actor.create_content(self.src, from_url=True)
        self.assertEqual(fs.label, "thesis.pdf")
        self.assertIsInstance(job, jobmgt.Job)
        self.assertEqual(job.info['execmodule'], "dams.jobs.permissions")
        self.assertTrue(job.succeeded)

        fs = self.store.find(fs.id)
        self.assertEqual(fs.files, {"original_file": "version1"})
        self.assertEqual(fs.visibility, "open")
        self.assertIn("reader", fs.read_users)

    def test_create_content_from_url_no_parent(self):
        fs = FileSet(import_url="https://example.com/files/thesis.pdf")
        self.assertIs(self.actor_for(fs).create_content(self.src, from_url=True), True)
        self.assertEqual(self.store.find(fs.id).files, {"original_file": "version1"})

    def test_update_content(self):
        fs = FileSet()
        actor = self.actor_for(fs)
        actor.create_content(self.src)
        newsrc = write_file(self.root / "v2.pdf", "%PDF-1.5 still not\n")

        job = actor.update_content(newsrc)
        self.assertTrue(job.succeeded)
        self.assertEqual(job.info['args'], ["--notify"])
        self.assertEqual(self.store.find(fs.id).files, {"original_file": "version2"})
        self.assertEqual(self.events, [("after_update_content", fs.id, "nstr1")])
        self.assertEqual(self.notifier.notes, [("nstr1", "ingest_complete", fs.id)])

    def test_revert_content(self):
        fs = FileSet()
        actor = self.actor_for(fs)
        actor.create_content(self.src)
        actor.update_content(write_file(self.root / "v2.pdf", "%PDF-1.5 still not\n"))
        self.events = []

        self.assertTrue(actor.revert_content("version1"))
        self.assertEqual(fs.files, {"original_file": "version3"})
        self.assertEqual(self.events, [("after_revert_content", fs.id, "nstr1", "version1")])

        self.assertFalse(actor.revert_content("version9"))
        self.assertEqual(len(self.events), 1)

    def test_deposit_keeps_content(self):
        fs = FileSet()
        actor = self.actor_for(fs)
        actor.create_content(self.src)
        self.assertEqual(fs.files, {})
        self.assertTrue(actor.create_metadata({}))
        self.assertTrue(actor.attach_to_work(self.work))

        saved = self.store.find(fs.id)
        self.assertEqual(saved.files, {"original_file": "version1"})
        self.assertEqual(saved.depositor, "nstr1")
        self.assertEqual(saved.visibility, "open")
        self.assertEqual(self.store.find(self.work.id).member_ids, [fs.id])

    def test_update_metadata_keeps_content(self):
        fs = FileSet()
        actor = self.actor_for(fs)
        actor.create_content(self.src)
        actor.create_metadata()
        actor.attach_to_work(self.work)
        actor.update_content(write_file(self.root / "v2.pdf", "%PDF-1.5 still not\n"))

        self.assertTrue(actor.update_metadata({"title": ["New"]}))
        saved = self.store.find(fs.id)
        self.assertEqual(saved.files, {"original_file": "version2"})
        self.assertEqual(saved.title, ["New"])
        self.assertEqual(fs.files, {"original_file": "version2"})

class TestMetadata(FileSetActorTestBase):

    def test_assigns_visibility(self):
        self.assertFalse(assigns_visibility(None))
        self.assertFalse(assigns_visibility({}))
        self.assertFalse(assigns_visibility({"title": "a"}))
        self.assertTrue(assigns_visibility({"visibility": "open"}))
        self.assertTrue(assigns_visibility({"embargo_release_date": "2199-01-01"}))
        self.assertTrue(assigns_visibility({"lease_expiration_date": "2199-01-01"}))

    def test_create_metadata(self):
        fs = FileSet(label="a.txt")
        customized = []
        self.assertTrue(self.actor_for(fs).create_metadata(None, customized.append))
        self.assertEqual(customized, [fs])
        self.assertEqual(fs.depositor, "nstr1")
        self.assertIn("nstr1", fs.edit_users)
        self.assertEqual(fs.creator, ["nstr1"])
        self.assertTrue(fs.date_uploaded)
        self.assertEqual(fs.date_uploaded, fs.date_modified)
        self.assertIsNone(fs.visibility)
        self.assertFalse(fs.persisted)

    def test_create_metadata_bad_visibility(self):
        fs = FileSet(label="a.txt")
        self.assertFalse(self.actor_for(fs).create_metadata({"visibility": "embargo"}))
        self.assertEqual(len(fs.errors), 1)
        self.assertIsNone(fs.visibility)

    def test_update_metadata(self):
        fs = FileSet(label="a.txt", title="a.txt")
        actor = self.actor_for(fs)
        actor.create_metadata()
        actor.attach_to_work(self.work)

        self.assertTrue(actor.update_metadata({"title": ["Chapter 1"], "description": "the first chapter"}))
        fs = self.store.find(fs.id)
        self.assertEqual(fs.title, ["Chapter 1"])
        self.assertEqual(fs.get_attribute("description"), ["the first chapter"])

        other = FileSetActor(fs, Agent("dams", Agent.USER, "gurn"), self.svcs)
        self.assertFalse(other.update_metadata({"title": ["Mine"]}))
        self.assertEqual(len(fs.errors), 1)
        self.assertEqual(self.store.find(fs.id).title, ["Chapter 1"])


if __name__ == '__main__':
    test.main()
