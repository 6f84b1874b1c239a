import pytest

from protolauncher.metadata import Literal, Conditional, ArgumentTemplate, \
    parse_version, parse_library, parse_arguments, parse_asset_index
from protolauncher.system import PlatformInfo


LINUX = PlatformInfo("linux", "6.1.0", "x86_64", 64)


VERSION_DATA = {
    "id": "1.20.1",
    "type": "release",
    "mainClass": "net.minecraft.client.main.Main",
    "releaseTime": "2023-06-12T13:25:51+00:00",
    "javaVersion": {"component": "java-runtime-gamma", "majorVersion": 17},
    "assetIndex": {
        "id": "5",
        "sha1": "ab" * 20,
        "size": 400,
        "url": "https://example.com/indexes/5.json"
    },
    "assets": "5",
    "downloads": {
        "client": {"sha1": "cd" * 20, "size": 1000, "url": "https://example.com/client.jar"}
    },
    "arguments": {
        "game": [
            "--username",
            "${auth_player_name}",
            {
                "rules": [{"action": "allow", "features": {"has_custom_resolution": True}}],
                "value": ["--width", "${resolution_width}"]
            }
        ],
        "jvm": [
            {"rules": [{"action": "allow", "os": {"name": "osx"}}], "value": "-XstartOnFirstThread"},
            "-cp",
            "${classpath}"
        ]
    },
    "libraries": [
        {
            "name": "com.mojang:logging:1.1.1",
            "downloads": {
                "artifact": {
                    "path": "com/mojang/logging/1.1.1/logging-1.1.1.jar",
                    "sha1": "ef" * 20,
                    "size": 15343,
                    "url": "https://libraries.minecraft.net/com/mojang/logging/1.1.1/logging-1.1.1.jar"
                }
            }
        }
    ],
    "logging": {
        "client": {
            "argument": "-Dlog4j.configurationFile=${path}",
            "file": {
                "id": "client-1.12.xml",
                "sha1": "bd" * 20,
                "size": 888,
                "url": "https://example.com/client-1.12.xml"
            },
            "type": "log4j2-xml"
        }
    }
}


def test_parse_version():

    desc = parse_version(VERSION_DATA)

    assert desc.id == "1.20.1"
    assert desc.type == "release"
    assert desc.main_class == "net.minecraft.client.main.Main"
    assert desc.java_component == "java-runtime-gamma"
    assert desc.java_major_version == 17
    assert desc.assets_id == "5"
    assert desc.asset_index.path == "5"
    assert desc.client.url == "https://example.com/client.jar"
    assert desc.client.size == 1000
    assert len(desc.libraries) == 1
    assert desc.libraries[0].artifact.path == "com/mojang/logging/1.1.1/logging-1.1.1.jar"
    assert desc.logging.file_id == "client-1.12.xml"
    assert desc.logging.artifact.path == "client-1.12.xml"
    assert desc.inherits_from is None

    assert len(desc.game_args) == 3
    assert isinstance(desc.game_args.elements[2], Conditional)
    assert desc.game_args.feature_names() == {"has_custom_resolution"}


def test_parse_version_legacy_arguments():

    desc = parse_version({
        "id": "1.7.10",
        "minecraftArguments": "--username ${auth_player_name}  --session ${auth_session}"
    })

    assert desc.jvm_args is None
    assert list(desc.game_args) == [
        Literal("--username"),
        Literal("${auth_player_name}"),
        Literal("--session"),
        Literal("${auth_session}"),
    ]


def test_parse_version_uses_given_id():
    assert parse_version({}, "foo").id == "foo"


@pytest.mark.parametrize("data", [
    [],
    {"id": 12},
    {"id": "a", "libraries": {}},
    {"id": "a", "arguments": {"game": "--foo"}},
    {"id": "a", "javaVersion": {"majorVersion": "17"}},
    {"id": "a", "assetIndex": {"url": "https://example.com"}},
    {"id": "a", "minecraftArguments": ["--foo"]},
])
def test_parse_version_invalid(data):
    with pytest.raises(ValueError):
        parse_version(data)


def test_invalid_message_has_path():
    with pytest.raises(ValueError, match="metadata: /libraries/0/name must be a string"):
        parse_version({"id": "a", "libraries": [{}]})


def test_parse_arguments_without_rules():

    # Conditional without rules become literals.
    template = parse_arguments(["-a", {"value": ["-b", "-c"]}], "args")
    assert list(template) == [Literal("-a"), Literal("-b"), Literal("-c")]


def test_argument_template_select():

    template = parse_arguments([
        "-a",
        {"rules": [{"action": "allow", "os": {"name": "linux"}}], "value": ["-b", "-c"]},
        {"rules": [{"action": "allow", "os": {"name": "osx"}}], "value": "-d"},
    ], "args")

    assert list(template.select(LINUX)) == ["-a", ["-b", "-c"]]


def test_argument_template_add():

    left = ArgumentTemplate.from_literals("a")
    right = ArgumentTemplate.from_literals("b")
    both = left + right

    assert list(both) == [Literal("a"), Literal("b")]
    assert len(left) == 1 and len(right) == 1


def test_parse_library_natives():

    lib = parse_library({
        "name": "org.lwjgl.lwjgl:lwjgl-platform:2.9.4",
        "natives": {"linux": "natives-linux", "windows": "natives-windows-${arch}"},
        "extract": {"exclude": ["META-INF/"]},
        "downloads": {
            "classifiers": {
                "natives-linux": {"sha1": "aa" * 20, "size": 10, "url": "https://example.com/natives-linux.jar"}
            }
        }
    }, "lib")

    assert lib.artifact is None
    assert lib.native_classifier(LINUX) == "natives-linux"
    assert lib.native_classifier(PlatformInfo("windows", "10.0", "x86", 32)) == "natives-windows-32"
    assert lib.native_classifier(PlatformInfo("osx", "14.0", "arm64", 64)) is None
    assert lib.classifiers["natives-linux"].path == "org/lwjgl/lwjgl/lwjgl-platform/2.9.4/lwjgl-platform-2.9.4-natives-linux.jar"
    assert not lib.extract.accept("META-INF/MANIFEST.MF")
    assert lib.extract.accept("liblwjgl.so")


def test_parse_library_artifact_default_path():

    lib = parse_library({
        "name": "net.fabricmc:fabric-loader:0.14.21",
        "url": "https://maven.fabricmc.net/",
        "downloads": {"artifact": {"sha1": "aa" * 20}}
    }, "lib")

    assert lib.artifact.url is None
    assert lib.artifact.path == "net/fabricmc/fabric-loader/0.14.21/fabric-loader-0.14.21.jar"
    assert lib.url == "https://maven.fabricmc.net/"


def test_parse_asset_index():

    index = parse_asset_index({
        "virtual": True,
        "objects": {
            "icons/icon_16x16.png": {"hash": "bdf48ef6b5d0d23bbb02e17d04865216179f510a", "size": 3665}
        }
    }, "legacy")

    assert index.id == "legacy"
    assert index.virtual
    assert not index.map_to_resources
    assert index.objects["icons/icon_16x16.png"].path == "bd/bdf48ef6b5d0d23bbb02e17d04865216179f510a"

    with pytest.raises(ValueError):
        parse_asset_index({"objects": {"a": {"hash": "ab", "size": "1"}}}, "bad")
