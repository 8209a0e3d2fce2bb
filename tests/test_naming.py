from stackd.models import ServiceSpec
from stackd.naming import InstanceTracker, container_labels, stack_labels
from stackd.settings import settings


def test_next_instance_counts_existing_containers(runtime):
    runtime.add_container("s_web_1", labels=stack_labels("s", "web"), state="exited")
    assert InstanceTracker(runtime).next_instance_name("s", "web") == "s_web_2"


def test_next_instance_ignores_other_services_and_stacks(runtime):
    runtime.add_container("s_db_1", labels=stack_labels("s", "db"))
    runtime.add_container("t_web_1", labels=stack_labels("t", "web"))
    assert InstanceTracker(runtime).next_instance_name("s", "web") == "s_web_1"


def test_explicit_container_name_is_used_verbatim(runtime):
    svc = ServiceSpec(name="web", image="nginx", container_name="frontdoor")
    assert InstanceTracker(runtime).container_name("s", svc) == "frontdoor"


def test_container_name_reuses_existing_instance(runtime):
    runtime.add_container("s_web_1", labels=stack_labels("s", "web"))
    svc = ServiceSpec(name="web", image="nginx")
    assert InstanceTracker(runtime).container_name("s", svc) == "s_web_1"


def test_container_name_for_new_service(runtime):
    svc = ServiceSpec(name="web", image="nginx")
    assert InstanceTracker(runtime).container_name("s", svc) == "s_web_1"


def test_container_labels():
    assert container_labels("s", "web") == {
        settings.stack_label: "s",
        settings.service_label: "web",
        settings.managed_label: "true",
    }


def test_container_name_prefers_lowest_ordinal(runtime):
    runtime.add_container("s_web_10", labels=stack_labels("s", "web"))
    runtime.add_container("s_web_2", labels=stack_labels("s", "web"), state="exited")
    svc = ServiceSpec(name="web", image="nginx")
    assert InstanceTracker(runtime).container_name("s", svc) == "s_web_2"
