from conftest import make_spec

from fto import db
from fto.registry import SpecRegistry


def test_submit_versions_and_dedupes():
    reg = SpecRegistry()

    v1, changed = reg.submit(make_spec("web"))
    assert (v1.version, changed) == (1, True)

    again, changed = reg.submit(make_spec("web"))
    assert (again.version, changed) == (1, False)

    v2, changed = reg.submit(make_spec("web", image="web:2"))
    assert (v2.version, changed) == (2, True)
    assert [s.version for s in reg.history("web")] == [1, 2]
    assert reg.state("web", 2) == "candidate"


def test_identical_resubmission_after_failure_is_a_new_version():
    reg = SpecRegistry()
    v1, _ = reg.submit(make_spec("web"))
    reg.mark("web", v1.version, "failed")

    retry, changed = reg.submit(make_spec("web"))

    assert changed
    assert retry.version == 2


def test_resubmitting_the_active_spec_after_a_failed_update_is_a_no_op():
    reg = SpecRegistry()
    reg.submit(make_spec("web"))
    reg.mark("web", 1, "active")
    reg.submit(make_spec("web", image="web:2"))
    reg.mark("web", 2, "failed")

    again, changed = reg.submit(make_spec("web"))

    assert (again.version, changed) == (1, False)
    assert [s.version for s in reg.history("web")] == [1, 2]


def test_activation_retires_the_previous_version():
    reg = SpecRegistry()
    reg.submit(make_spec("web"))
    reg.submit(make_spec("web", image="web:2"))

    reg.mark("web", 1, "active")
    reg.mark("web", 2, "active")

    assert reg.active("web").version == 2
    assert reg.state("web", 1) == "retired"
    assert db.get_version("web", 1).state == "retired"


def test_history_survives_restart():
    reg = SpecRegistry()
    reg.submit(make_spec("web"))
    reg.submit(make_spec("web", image="web:2"))
    reg.mark("web", 2, "active")

    fresh = SpecRegistry()
    assert fresh.load() == 2
    assert fresh.active("web").image == "web:2"
    assert fresh.latest("web").fingerprint() == make_spec("web", image="web:2").fingerprint()


def test_removed_services_are_hidden():
    reg = SpecRegistry(persist=False)
    reg.submit(make_spec("web"))
    reg.remove("web")

    assert reg.services() == []
    assert reg.is_removed("web")

    reg.submit(make_spec("web"))
    assert reg.services() == ["web"]
