from dataclasses import replace

import pytest

from stackd import db, loader
from stackd.errors import ProjectLoadError, StackNotFound
from stackd.loader import get_env_map, load_project, parse_env_file, project_for_stack, substitute_env
from stackd.models import DependencyCondition, PortMapping, VolumeBinding
from stackd.settings import settings

COMPOSE = """
services:
  web:
    image: nginx:${NGINX_TAG:-1.25}
    command: nginx -g "daemon off;"
    container_name: frontdoor
    environment:
      - MODE=${MODE}
      - PASSTHROUGH
    ports:
      - "8080:80"
      - "127.0.0.1:8443:443/tcp"
      - "53/udp"
    volumes:
      - ./html:/usr/share/nginx/html:ro
      - /etc/nginx/conf.d:/etc/nginx/conf.d
      - cache:/var/cache/nginx
    networks: [front]
    depends_on:
      api:
        condition: service_healthy
    restart: unless-stopped
    cap_add: [NET_ADMIN]
  api:
    image: api:1
    environment:
      DB_URL: postgres://db
      EMPTY:
    ports:
      - target: 9000
        published: 19000
        protocol: tcp
    depends_on: [db]
    network_mode: service:db
  db:
    image: postgres:16
networks:
  front:
    name: shared_front
"""


def test_parse_env_file():
    content = """
# comment
A=1
 B = two words
C="quoted"
D='single'
E=
not a pair
F=x=y
"""
    assert parse_env_file(content) == {"A": "1", "B": "two words", "C": "quoted", "D": "single", "E": "", "F": "x=y"}


def test_substitute_env(monkeypatch):
    monkeypatch.setenv("FROM_HOST", "host-value")
    monkeypatch.delenv("MISSING", raising=False)
    env = {"TAG": "2.0", "EMPTY": ""}
    assert substitute_env("img:${TAG}", env) == "img:2.0"
    assert substitute_env("img:$TAG", env) == "img:2.0"
    assert substitute_env("${EMPTY:-fallback}", env) == "fallback"
    assert substitute_env("${MISSING:-x}", env) == "x"
    assert substitute_env("${FROM_HOST}/$FROM_HOST", env) == "host-value/host-value"
    assert substitute_env("${MISSING} $MISSING", env) == "${MISSING} $MISSING"


def test_load_project_normalizes_services(monkeypatch):
    monkeypatch.delenv("NGINX_TAG", raising=False)
    project = load_project("s", COMPOSE, {"MODE": "prod"}, working_dir="/srv/stacks/s")

    web = project.services["web"]
    assert web.image == "nginx:1.25"
    assert web.command == ["nginx", "-g", "daemon off;"]
    assert web.container_name == "frontdoor"
    assert web.environment == {"MODE": "prod", "PASSTHROUGH": None}
    assert web.ports == [
        PortMapping(target=80, published="8080"),
        PortMapping(target=443, protocol="tcp", published="8443", host_ip="127.0.0.1"),
        PortMapping(target=53, protocol="udp"),
    ]
    assert web.volumes == [
        VolumeBinding(source="/srv/stacks/s/html", target="/usr/share/nginx/html", read_only=True),
        VolumeBinding(source="/etc/nginx/conf.d", target="/etc/nginx/conf.d"),
        VolumeBinding(source="cache", target="/var/cache/nginx", type="volume"),
    ]
    assert web.networks == ["shared_front"]
    assert web.depends_on == {"api": DependencyCondition.HEALTHY}
    assert web.restart == "unless-stopped"
    assert web.cap_add == ["NET_ADMIN"]

    api = project.services["api"]
    assert api.environment == {"DB_URL": "postgres://db", "EMPTY": None}
    assert api.ports == [PortMapping(target=9000, published="19000")]
    assert api.depends_on == {"db": DependencyCondition.STARTED}
    assert api.network_mode == "service:db"

    assert project.services["db"].command is None


@pytest.mark.parametrize(
    "text",
    [
        "services: [unclosed",
        "just a string",
        "services:\n  web: {}\n",
        "services:\n  web:\n    image: nginx\n    ports: ['not-a-port']\n",
    ],
)
def test_invalid_descriptions(text):
    with pytest.raises(ProjectLoadError):
        load_project("s", text)


def test_project_for_stack_uses_stored_env():
    db.save_stack("s", "services:\n  web:\n    image: nginx:${TAG}\n", "TAG=1.27\n")
    assert get_env_map("s") == {"TAG": "1.27"}
    assert project_for_stack("s").services["web"].image == "nginx:1.27"


def test_project_for_unknown_stack():
    with pytest.raises(StackNotFound):
        project_for_stack("nope")


def test_relative_bind_sources_become_absolute(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    text = """
services:
  web:
    image: nginx
    volumes:
      - ./html:/usr/share/nginx/html:ro
      - ../shared/conf:/etc/x
      - ~/conf:/etc/y
      - cache:/var/cache
      - type: bind
        source: ./certs
        target: /certs
"""
    web = load_project("s", text, working_dir=str(tmp_path / "s")).services["web"]

    assert [v.source for v in web.volumes] == [
        str(tmp_path / "s" / "html"),
        str(tmp_path / "shared" / "conf"),
        str(tmp_path / "home" / "conf"),
        "cache",
        str(tmp_path / "s" / "certs"),
    ]


def test_default_working_dir_is_under_stacks_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(loader, "settings", replace(settings, stacks_dir=str(tmp_path)))
    text = "services:\n  web:\n    image: nginx\n    volumes: ['./html:/html']\n"
    assert load_project("shop", text).services["web"].volumes[0].source == str(tmp_path / "shop" / "html")


def test_boolean_environment_values_are_lowercase():
    text = "services:\n  web:\n    image: nginx\n    environment:\n      DEBUG: true\n      CACHE: false\n      WORKERS: 4\n"
    assert load_project("s", text).services["web"].environment == {"DEBUG": "true", "CACHE": "false", "WORKERS": "4"}


def test_double_dollar_is_a_literal_dollar(monkeypatch):
    monkeypatch.setenv("HOME", "/root")
    assert substitute_env("$$HOME ${X} $$${X} $${X}", {"X": "1"}) == "$HOME 1 $1 ${X}"
