import argparse
import dataclasses
from pathlib import Path
from typing import Optional

from vbox_cluster.config.settings import ClusterConfig, build_config, load_settings
from vbox_cluster.domain import BuildResult
from vbox_cluster.hypervisor import ClusterProvisioner, VBoxManage
from vbox_cluster.installer import ImageBuilder, write_answer_file
from vbox_cluster.logging import LoggerFactory, operation_context, setup_logging
from vbox_cluster.services.artifacts import ensure_base_image
from vbox_cluster.services.cloud_init import create_node_volumes
from vbox_cluster.services.summary import append_summary
from vbox_cluster.storage.commands import require_tools
from vbox_cluster.storage.exceptions import ClusterSetupError


def required_tools(config: ClusterConfig, image_only: bool = False) -> list[str]:
    """External tools the run needs, checked before anything is written."""
    tools = ["sha256sum", "bsdtar", "pigz|gzip", config.packager]
    if not image_only:
        tools += ["genisoimage", "VBoxManage"]
    return list(dict.fromkeys(tools))


def build_image(config: ClusterConfig) -> BuildResult:
    with operation_context("fetch-image", image=config.base_image.name):
        ensure_base_image(config.base_image, config.download_timeout_seconds)
    with operation_context("generate-answer-file", path=str(config.answer_path)):
        write_answer_file(config.answer, config.answer_path)
    builder = ImageBuilder(
        boot=config.boot,
        delivery=config.delivery,
        packager=config.packager,
        verify_output=config.verify_output_image,
        keep_work_tree=config.keep_work_tree,
    )
    return builder.build(
        config.base_image.path, config.answer_path, config.work_dir, config.output_image
    )


def run(config: ClusterConfig, image_only: bool = False) -> Optional[BuildResult]:
    """Fetch, build, generate node configuration and provision, in order."""
    with operation_context("check-dependencies"):
        require_tools(required_tools(config, image_only))

    result = build_image(config)
    if image_only:
        return result

    with operation_context("generate-node-config", nodes=len(config.roster)):
        volumes = create_node_volumes(config.roster, config.network, config.cloudinit_dir)

    provisioner = ClusterProvisioner(
        VBoxManage(),
        config.vm_base_dir,
        os_type=config.os_type,
        storage_controller=config.storage_controller,
    )
    provisioner.provision(
        config.roster,
        config.network,
        result.output_image,
        {name: volume.volume for name, volume in volumes.items()},
    )
    append_summary(config.log_file, config.roster)
    return result


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Build an unattended Debian installer image and provision a VirtualBox cluster"
    )
    parser.add_argument("--settings", type=Path, help="Path to a JSON settings file")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log external command output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument(
        "--image-only",
        action="store_true",
        help="Build the installer image without provisioning machines",
    )
    parser.add_argument(
        "--keep-work-tree",
        action="store_true",
        help="Keep the extracted working tree after a successful build",
    )
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    log.info("Starting VirtualBox VM setup")

    try:
        load_settings(args.settings)
        config = build_config()
        if args.keep_work_tree:
            config = dataclasses.replace(config, keep_work_tree=True)
        run(config, image_only=args.image_only)
    except ClusterSetupError as error:
        log.error(f"ERROR during {error.stage}: {error}")
        return 1
    except OSError as error:
        log.error(f"ERROR: {error}")
        return 1

    log.info("Setup completed successfully")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
