# File: mpyfs/dm.py

#!/usr/bin/env python3
"""
mpyfs (dm.py)

Browse and edit the filesystem of a MicroPython board through mpremote, and
upload a local project incrementally: files already on the board with the
same size and checksum are skipped.

Usage:
  mpyfs [--port PORT] [--verbose] <command> [<args>...]
"""
from pathlib import Path
import argparse
import logging
import os
import sys

from . import __version__
from .config import load_config, save_config
from .errors import DeviceFsError, OperationCancelled, UploadError
from .project import ProjectLayout
from .protocol import normalize_remote_path
from .session import DeviceSession, wait_for
from .transport import MpremoteTransport, list_ports

DEVICE_PORT = None  # Will be set by main after parsing args or loading config


def cmd_devices():
    cfg = load_config()
    selected_port = cfg.get("port")
    available_ports = list_ports()
    if not available_ports:
        print("No serial ports found.")
        return

    print("Available COM ports:")
    for p in available_ports:
        marker = "*" if p.device == selected_port else ""
        print(f"  {marker}{p.device}{marker} - {p.description}")

    if selected_port and selected_port not in [p.device for p in available_ports]:
        print(f"\nWarning: The selected COM port '{selected_port}' is not available. Please reconfigure.")
    elif not selected_port:
        print("\nNo COM port selected. Use 'mpyfs device <PORT_NAME>' to set one.")
    else:
        print(f"\nSelected COM port: {selected_port} (use 'mpyfs device <PORT_NAME>' to change it).")


def test_device(port):
    try:
        name = MpremoteTransport(port).probe()
    except DeviceFsError as e:
        suggestion = "Ensure the device is properly connected and flashed with MicroPython."
        return False, f"No response or error on {port}. Details: {e}\n{suggestion}"
    if "micropython" in name:
        return True, f"MicroPython confirmed on {port} (sys.implementation.name: '{name}')."
    return False, f"Connected to {port}, but unexpected response for MicroPython check: {name}"


def cmd_device(port_arg, force=False):
    global DEVICE_PORT
    available = [p.device for p in list_ports()]
    if port_arg not in available:
        print(f"Error: Port {port_arg} not found among available ports: {', '.join(available) if available else 'None'}", file=sys.stderr)
        sys.exit(1)

    ok, result_msg = test_device(port_arg)
    print(result_msg)

    if not ok and not force:
        print(f"Device test failed. To set {port_arg} anyway, use --force.", file=sys.stderr)
        sys.exit(1)

    cfg = load_config()
    cfg["port"] = port_arg
    if not save_config(cfg):
        print("Warning: the selected port could not be saved.", file=sys.stderr)
    DEVICE_PORT = port_arg
    if ok:
        print(f"Selected COM port set to {port_arg}.")
    else:
        print(f"Selected COM port set to {port_arg} (forced).")


def open_session():
    session = DeviceSession(DEVICE_PORT)
    wait_for(session.refresh())
    return session


def _require_directory(filesystem, remote_path):
    node = filesystem.get(remote_path)
    if not node.is_directory:
        raise NotADirectoryError(f"{node.display_path} is not a directory")
    return node


def list_remote(remote_dir=None):
    with open_session() as session:
        base = _require_directory(session.filesystem, remote_dir or "/")
        entries = [node for node in base.walk() if node is not base]
        if not entries:
            print(f"Directory ':{base.display_path}' is empty.")
            return
        prefix = len(base.full_path) + 1
        for node in sorted(entries, key=lambda n: n.full_path):
            suffix = "/" if node.is_directory else ""
            size = "" if node.is_directory else f"  ({node.length} bytes)"
            print(f"{node.full_path[prefix:]}{suffix}{size}")


def tree_remote(remote_dir=None):
    with open_session() as session:
        base = _require_directory(session.filesystem, remote_dir or "/")
        print("." if base.is_root else base.name)

        def print_tree_nodes(node, prefix_str=""):
            children = sorted(node.children, key=lambda n: n.name)
            for i, child in enumerate(children):
                last = i == len(children) - 1
                connector = "└── " if last else "├── "
                print(f"{prefix_str}{connector}{child.name}{'/' if child.is_directory else ''}")
                if child.is_directory:
                    print_tree_nodes(child, prefix_str + ("    " if last else "│   "))

        print_tree_nodes(base)


def cmd_cat(remote_path):
    with open_session() as session:
        node = session.filesystem.get(remote_path)
        data = wait_for(session.call("Read file", session.filesystem.read_content, node))
    sys.stdout.buffer.write(data)
    sys.stdout.flush()


def _download_file(filesystem, node, local_target):
    local_target.parent.mkdir(parents=True, exist_ok=True)
    local_target.write_bytes(filesystem.read_content(node))
    print(f"  {node.display_path} -> {local_target}")


def _download(filesystem, node, local_target):
    if not node.is_directory:
        _download_file(filesystem, node, local_target)
        return 1
    count = 0
    local_target.mkdir(parents=True, exist_ok=True)
    prefix = len(node.full_path)
    for child in node.walk():
        relative = child.full_path[prefix:].lstrip("/")
        if child.is_directory:
            (local_target / relative).mkdir(parents=True, exist_ok=True)
        else:
            _download_file(filesystem, child, local_target / relative)
            count += 1
    return count


def cmd_download(remote_src_arg, local_dest_arg=None):
    with open_session() as session:
        node = session.filesystem.get(remote_src_arg)
        name = node.name or "device_root"
        if local_dest_arg:
            local_dest_path_obj = Path(os.path.abspath(local_dest_arg))
            # Existing dir or trailing slash: download into it
            if local_dest_arg.endswith(("/", os.sep)) or local_dest_path_obj.is_dir():
                local_target = local_dest_path_obj / name
            else:
                local_target = local_dest_path_obj
        else:
            local_target = Path.cwd() / name
        print(f"Downloading ':{node.display_path}' to '{local_target}'...")
        count = wait_for(session.call("Download", _download, session.filesystem, node, local_target))
    print(f"Download complete: {count} file(s).")


def _print_progress(done, total, remote_path):
    print(f"  [{done}/{total}] {normalize_remote_path(remote_path)}")


def cmd_upload(targets, project_dir=None, reset=False):
    layout = ProjectLayout.load(project_dir or Path.cwd())
    session = DeviceSession(DEVICE_PORT)
    with session:
        print(f"Uploading from '{layout.root}'...")
        task = session.upload(layout, targets or None, progress=_print_progress, reset_on_success=reset)
        try:
            report = wait_for(task)
        except UploadError as e:
            print(f"Upload incomplete: {e.report.summary()}", file=sys.stderr)
            if e.report.not_attempted:
                print(f"  Not attempted: {', '.join(e.report.not_attempted)}", file=sys.stderr)
            raise
    print(f"Upload complete: {report.summary()}.")
    if not report.refreshed:
        print("Warning: the device file list could not be refreshed afterwards.", file=sys.stderr)
    if reset:
        print("Board reset.")


def delete_remote(remote_paths, assume_yes=False):
    with open_session() as session:
        nodes = [session.filesystem.get(path) for path in remote_paths]
        if any(node.is_root for node in nodes):
            print("Error: The device root cannot be deleted.", file=sys.stderr)
            sys.exit(1)
        print("About to delete:")
        for node in nodes:
            print(f"  :{node.display_path}{'/ (with all contents)' if node.is_directory else ''}")
        if not assume_yes:
            confirm = input("Are you sure? Type 'yes' to proceed: ")
            if confirm.lower() != "yes":
                print("Operation cancelled.")
                return
        deleted = wait_for(session.delete(nodes))
    print(f"Deleted {len(deleted)} item(s).")


def _split_parent(filesystem, remote_path):
    parent_path, _, name = normalize_remote_path(remote_path).rpartition("/")
    return _require_directory(filesystem, parent_path or "/"), name


def cmd_mkdir(remote_path):
    with open_session() as session:
        parent, name = _split_parent(session.filesystem, remote_path)
        node = wait_for(session.call("Create directory", session.filesystem.create_directory, parent, name))
    print(f"Created ':{node.display_path}/'.")


def cmd_touch(remote_path):
    with open_session() as session:
        parent, name = _split_parent(session.filesystem, remote_path)
        node = wait_for(session.call("Create file", session.filesystem.create_file, parent, name))
    print(f"Created ':{node.display_path}'.")


def cmd_rename(remote_path, new_name):
    with open_session() as session:
        node = session.filesystem.get(remote_path)
        old_path = node.display_path
        wait_for(session.call("Rename", session.filesystem.rename, node, new_name))
    print(f"Renamed ':{old_path}' to ':{node.display_path}'.")


def cmd_move(remote_path, dest_dir):
    with open_session() as session:
        node = session.filesystem.get(remote_path)
        target = _require_directory(session.filesystem, dest_dir)
        old_path = node.display_path
        wait_for(session.call("Move", session.filesystem.move, node, target))
    print(f"Moved ':{old_path}' to ':{node.display_path}'.")


def cmd_copy(remote_path, dest_dir, new_name=None):
    with open_session() as session:
        node = session.filesystem.get(remote_path)
        target = _require_directory(session.filesystem, dest_dir)
        duplicate = wait_for(session.call("Copy", session.filesystem.copy, node, target, new_name))
    print(f"Copied ':{node.display_path}' to ':{duplicate.display_path}'.")


def cmd_run(script="main.py"):
    with open_session() as session:
        node = session.filesystem.get(script)
        if node.is_directory:
            raise IsADirectoryError(f"{node.display_path} is a directory, not a script")
        print(f"Running '{node.display_path}' on {DEVICE_PORT}...")
        output = wait_for(session.run_script(node.full_path))
    if output:
        print(output, end="" if output.endswith("\n") else "\n")


def cmd_reset():
    MpremoteTransport(DEVICE_PORT).reset()
    print("Board reset.")


def main():
    global DEVICE_PORT
    cfg = load_config()
    parser = argparse.ArgumentParser(
        prog="mpyfs",
        description="Browse, edit and incrementally upload files on a MicroPython board via mpremote.",
        epilog="Use 'mpyfs <command> --help' for more information on a specific command."
    )
    parser.add_argument("--port", "-p", help="Override default/configured COM port for this command instance.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every device command.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="cmd", required=True, title="Available commands", metavar="<command>")

    subparsers.add_parser("devices", help="List available COM ports and show the selected COM port.")

    dev_parser = subparsers.add_parser("device", help="Set or test the selected COM port for operations.")
    dev_parser.add_argument("port_name", nargs='?', metavar="PORT", help="The COM port to set. If omitted, tests current.")
    dev_parser.add_argument("--force", "-f", action="store_true", help="Force set port even if test fails.")

    ls_parser = subparsers.add_parser("ls", help="List files/dirs on the board (recursively from given path).")
    ls_parser.add_argument("remote_directory", nargs='?', default=None, metavar="REMOTE_DIR", help="Remote directory path (default: root).")

    tree_parser = subparsers.add_parser("tree", help="Display remote file tree.")
    tree_parser.add_argument("remote_directory", nargs='?', default=None, metavar="REMOTE_DIR", help="Remote directory path (default: root).")

    cat_parser = subparsers.add_parser("cat", help="Print a remote file to stdout.")
    cat_parser.add_argument("remote_path", metavar="REMOTE_PATH")

    dl_parser = subparsers.add_parser("download", help="Download file/directory from the board.")
    dl_parser.add_argument("remote_source_path", metavar="REMOTE_PATH", help="Remote file or directory ('/' for everything).")
    dl_parser.add_argument("local_target_path", nargs='?', default=None, metavar="LOCAL_PATH", help="Local target. An existing directory or a trailing '/' downloads into it. Default: current directory.")

    up_parser = subparsers.add_parser("upload", help="Upload changed project files to the board.")
    up_parser.add_argument("targets", nargs='*', metavar="TARGET", help="Local files/dirs to upload. If omitted, uploads the whole project.")
    up_parser.add_argument("--project", default=None, metavar="DIR", help="Project root holding mpyfs.json (default: current directory).")
    up_parser.add_argument("--reset", action="store_true", help="Reset the board after a successful upload.")

    del_parser = subparsers.add_parser("delete", help="Delete files/directories on the board.")
    del_parser.add_argument("remote_paths", nargs='+', metavar="REMOTE_PATH")
    del_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation.")

    mkdir_parser = subparsers.add_parser("mkdir", help="Create a remote directory.")
    mkdir_parser.add_argument("remote_path", metavar="REMOTE_PATH")

    touch_parser = subparsers.add_parser("touch", help="Create an empty remote file.")
    touch_parser.add_argument("remote_path", metavar="REMOTE_PATH")

    rename_parser = subparsers.add_parser("rename", help="Rename a remote file or directory in place.")
    rename_parser.add_argument("remote_path", metavar="REMOTE_PATH")
    rename_parser.add_argument("new_name", metavar="NEW_NAME")

    mv_parser = subparsers.add_parser("mv", help="Move a remote file or directory into another directory.")
    mv_parser.add_argument("remote_path", metavar="REMOTE_PATH")
    mv_parser.add_argument("dest_dir", metavar="DEST_DIR")

    cp_parser = subparsers.add_parser("cp", help="Copy a remote file or directory into another directory.")
    cp_parser.add_argument("remote_path", metavar="REMOTE_PATH")
    cp_parser.add_argument("dest_dir", metavar="DEST_DIR")
    cp_parser.add_argument("--name", default=None, help="Name of the copy (default: same name).")

    run_parser = subparsers.add_parser("run", help="Run a script stored on the board and show its output.")
    run_parser.add_argument("script_name", metavar="SCRIPT", nargs="?", default="main.py", help="Remote script path (default: main.py).")

    subparsers.add_parser("reset", help="Soft-reset the board.")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.port: DEVICE_PORT = args.port
    elif "port" in cfg: DEVICE_PORT = cfg["port"]

    if args.cmd not in ("devices", "device") and not DEVICE_PORT:
        print("Error: No COM port selected or configured.", file=sys.stderr)
        print("Use 'mpyfs devices' to list available ports, then 'mpyfs device <PORT_NAME>' to set one.", file=sys.stderr)
        sys.exit(1)

    try:
        if args.cmd == "devices": cmd_devices()
        elif args.cmd == "device":
            if args.port_name: cmd_device(args.port_name, args.force)
            elif DEVICE_PORT:
                print(f"Current selected COM port is {DEVICE_PORT}. Testing...")
                ok, msg = test_device(DEVICE_PORT); print(msg)
            else:
                print("No COM port currently selected or configured.")
                cmd_devices()
                print("\nUse 'mpyfs device <PORT_NAME>' to set one.")
        elif args.cmd == "ls": list_remote(args.remote_directory)
        elif args.cmd == "tree": tree_remote(args.remote_directory)
        elif args.cmd == "cat": cmd_cat(args.remote_path)
        elif args.cmd == "download": cmd_download(args.remote_source_path, args.local_target_path)
        elif args.cmd == "upload": cmd_upload(args.targets, args.project, args.reset)
        elif args.cmd == "delete": delete_remote(args.remote_paths, args.yes)
        elif args.cmd == "mkdir": cmd_mkdir(args.remote_path)
        elif args.cmd == "touch": cmd_touch(args.remote_path)
        elif args.cmd == "rename": cmd_rename(args.remote_path, args.new_name)
        elif args.cmd == "mv": cmd_move(args.remote_path, args.dest_dir)
        elif args.cmd == "cp": cmd_copy(args.remote_path, args.dest_dir, args.name)
        elif args.cmd == "run": cmd_run(args.script_name)
        elif args.cmd == "reset": cmd_reset()
    except OperationCancelled:
        print("Operation cancelled.", file=sys.stderr)
        sys.exit(130)
    except (DeviceFsError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
