"""
Command-line interface for aws-connect.
"""

import argparse
import getpass
import os
import sys

from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .bastion import BastionManager
from .cloud import CloudFacade
from .core import (
    MODE_ENVIRONMENT,
    MODE_MANUAL,
    MODE_PROFILE,
    MODE_VAULT,
    CredentialContext,
    command_exists,
    create_session,
    is_access_denied,
    list_profiles,
    list_vault_profiles,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    verify_identity,
)
from .errors import (
    AwsConnectError,
    InconsistentState,
    NotFound,
    PermissionDenied,
    ReadinessTimeout,
    UserCancelled,
)
from .portforward import SessionManager, default_local_port
from .secrets import ConnectionProfile, find_secret, get_secret_value, parse_secret
from .shell import ecs_exec, key_permissions_ok, run_client, run_ssh, ssh_command, ssm_shell
from .ssmsetup import SsmSetup


def read_input(prompt):
    return input(prompt).replace("\r", "").strip()


def confirm(prompt, default=False):
    """One-shot y/n question; Enter picks the default."""
    suffix = "(y/n, default: y)" if default else "(y/n, default: n)"
    answer = read_input(f"{prompt} {suffix}: ").lower()
    if not answer:
        return default
    return answer == "y"


def choose(prompt, count):
    """Ask for a number between 1 and count until one is given; returns a 0-based index."""
    while True:
        answer = read_input(f"{prompt} (1-{count}): ")
        if not answer:
            print_error("Input cannot be empty. Please enter a number.")
            continue
        if not answer.isdigit():
            print_error(f"Invalid input: '{answer}'. Please enter only numbers.")
            continue
        number = int(answer)
        if number < 1 or number > count:
            print_error(f"Invalid selection: {number}. Please select a number between 1 and {count}.")
            continue
        return number - 1


def choose_credentials(args):
    """
    Build the CredentialContext from flags, the environment or a menu.

    --vault and --profile win; otherwise existing environment credentials are
    used; otherwise the operator picks aws-vault, a profile or manual keys.
    """
    region = args.region or config.AWS_REGION
    if args.vault:
        return CredentialContext(mode=MODE_VAULT, profile=args.vault, region=region)
    if args.profile:
        return CredentialContext(mode=MODE_PROFILE, profile=args.profile, region=region)
    if os.environ.get("AWS_ACCESS_KEY_ID") or os.environ.get("AWS_PROFILE"):
        return CredentialContext(mode=MODE_ENVIRONMENT, region=region)

    print_info("Step 1: AWS Credentials Configuration")
    options = []
    if command_exists("aws-vault"):
        options.append(("Use aws-vault (recommended for security)", MODE_VAULT))
    else:
        print_info("Tip: aws-vault is not installed. See https://github.com/99designs/aws-vault#installation")
    profiles = list_profiles()
    if profiles:
        options.append(("Use AWS Profile (from ~/.aws/credentials or ~/.aws/config)", MODE_PROFILE))
    options.append(("Enter credentials manually (Access Key, Secret Key, Session Token)", MODE_MANUAL))

    for number, (label, _) in enumerate(options, 1):
        print(f"{number}) {label}")
    mode = options[choose("Select option", len(options))][1] if len(options) > 1 else MODE_MANUAL

    if mode == MODE_VAULT:
        names = list_vault_profiles()
        if not names:
            raise NotFound("No aws-vault profiles found", "Add one with: aws-vault add <profile>")
        for number, name in enumerate(names, 1):
            print(f"{number:2}. {name}")
        return CredentialContext(mode=MODE_VAULT, profile=names[choose("Select profile", len(names))], region=region)
    if mode == MODE_PROFILE:
        for number, name in enumerate(profiles, 1):
            print(f"{number:2}. {name}")
        return CredentialContext(mode=MODE_PROFILE, profile=profiles[choose("Select profile", len(profiles))], region=region)

    access_key = read_input("AWS Access Key ID: ")
    secret_key = getpass.getpass("AWS Secret Access Key: ").strip()
    session_token = getpass.getpass("AWS Session Token (optional, press Enter to skip): ").strip()
    if not access_key or not secret_key:
        raise UserCancelled("Access Key ID and Secret Access Key are required!")
    return CredentialContext(
        mode=MODE_MANUAL,
        region=region,
        access_key_id=access_key,
        secret_access_key=secret_key,
        session_token=session_token or None,
    )


def connect(args):
    """Resolve credentials, verify them and return (ctx, facade)."""
    ctx = choose_credentials(args)
    session = create_session(ctx)
    identity = verify_identity(session)
    print_success(f"Authenticated with {ctx.describe()}")
    print(f"  Account: {identity.get('Account')}")
    print(f"  Identity: {identity.get('Arn')}")
    print()
    return ctx, CloudFacade(session)


def select_database(facade, db_identifier=None):
    print_info("Step 2: Discovering RDS Databases...")
    try:
        databases = facade.list_db_instances()
    except ClientError as e:
        if is_access_denied(e):
            raise PermissionDenied("Cannot list RDS instances", permission="rds:DescribeDBInstances") from e
        raise
    if not databases:
        raise NotFound("No RDS instances found", "Missing permission: rds:DescribeDBInstances?")

    if db_identifier:
        for db in databases:
            if db["identifier"] == db_identifier:
                return db
        raise NotFound(f"Database '{db_identifier}' not found in {facade.region}")

    print(f"{'#':<3} {'Database Name':<40} {'Engine':<12} {'Endpoint':<50} {'Port':<6} {'Status':<12} Public")
    print("-" * 132)
    for number, db in enumerate(databases, 1):
        endpoint = db["endpoint"] or ""
        if len(endpoint) > 48:
            endpoint = endpoint[:45] + "..."
        print(
            f"{number:<3} {db['identifier']:<40} {db['engine']:<12} {endpoint:<50} "
            f"{str(db['port']):<6} {db['status']:<12} {'Yes' if db['public'] else 'No'}"
        )
    db = databases[choose("Select database number", len(databases))]
    print_success(f"Selected: {db['identifier']} ({db['engine']})")
    return db


def create_and_wait(manager, db_identifier):
    """Provision a bastion and wait for SSM; soft timeouts ask the operator."""
    instance_id = manager.create(db_identifier)
    print_info("Waiting for bastion to be ready for SSM connections (this may take 2-3 minutes)...")
    try:
        manager.await_ready(instance_id)
    except ReadinessTimeout as e:
        if not e.soft:
            raise
        print_warning("Bastion host was created but is not yet ready for SSM connections.")
        print_info(e.remediation)
        if not confirm("Continue anyway?", default=True):
            raise UserCancelled(
                "Exiting. Please wait a few minutes and try again, or use an existing bastion host."
            )
    return instance_id


def select_bastion(facade, db, bastion_id=None):
    """
    Pick the bastion for a database.

    Returns:
        str or None: bastion instance id, None for a direct connection
    """
    if bastion_id:
        return bastion_id

    print_info("Step 3: Finding Bastion Hosts for Database...")
    bastions = []
    if db.get("vpc_id"):
        try:
            bastions = facade.find_bastions(db["vpc_id"])
        except ClientError as e:
            print_warning(f"Could not search for bastion hosts: {e}")

    if bastions:
        print_success(f"Found {len(bastions)} bastion host(s) in the same VPC:")
        for number, bastion in enumerate(bastions, 1):
            print(f"{number:<3} {bastion['instance_id']:<20} {bastion['name']:<30} {bastion['subnet_id']}")
    else:
        print_warning("No bastion hosts found in the same VPC as the database.")

    if db["public"]:
        print_info("Database is publicly accessible. You can connect directly.")
        if not bastions or not confirm("Do you want to use a bastion host?"):
            print_info("Proceeding without bastion host (direct connection).")
            return None
        return bastions[choose("Select bastion number", len(bastions))]["instance_id"]

    print_warning("Database is not publicly accessible. A bastion host is required!")
    options = []
    if bastions:
        options.append(("Select from bastion hosts above", "select"))
    options += [
        ("Create a new bastion host automatically", "create"),
        ("Enter bastion instance ID manually", "manual"),
        ("Exit", "exit"),
    ]
    for number, (label, _) in enumerate(options, 1):
        print(f"{number}) {label}")
    action = options[choose("Select option", len(options))][1]

    if action == "select":
        return bastions[choose("Select bastion number", len(bastions))]["instance_id"]
    if action == "create":
        return create_and_wait(BastionManager(facade), db["identifier"])
    if action == "manual":
        entered = read_input("Enter Bastion Instance ID: ")
        if entered:
            return entered
    raise UserCancelled("Cannot proceed without bastion host for private RDS instance.")


def choose_secret(facade):
    """Pick one of up to 20 secrets; None means enter credentials manually."""
    print_warning("Could not auto-detect secret. Listing available secrets...")
    try:
        secrets = facade.list_secrets(limit=20)
    except ClientError as e:
        print_warning(f"Could not list secrets: {e}")
        return None
    if not secrets:
        return None
    print("Available Secrets:")
    for number, (name, _) in enumerate(secrets, 1):
        print(f"{number:2}. {name}")
    while True:
        answer = read_input(
            f"Select secret number (1-{len(secrets)}, or press Enter to enter credentials manually): "
        )
        if not answer:
            return None
        if answer.isdigit() and 1 <= int(answer) <= len(secrets):
            return secrets[int(answer) - 1]
        print_error(f"Invalid input: '{answer}'. Please enter a number or press Enter to skip.")


def resolve_credentials(facade, db):
    """Username/password from Secrets Manager, or typed in by the operator."""
    print_info("Step 4: Retrieving Database Credentials...")
    secret = find_secret(facade, db["identifier"], db.get("secret_arn"))
    if not secret:
        secret = choose_secret(facade)
    username = password = None
    if secret:
        name, arn = secret
        print_success(f"Found secret: {name}")
        username, password = parse_secret(get_secret_value(facade, arn))
        if username and password:
            print_success("Retrieved credentials from Secrets Manager")
        else:
            print_warning("Could not parse username/password from secret.")
    else:
        print_warning("Could not find secrets in Secrets Manager.")

    if not (username and password):
        username = read_input("Enter database username: ")
        password = getpass.getpass("Enter database password: ").strip()
        if not username or not password:
            raise UserCancelled("Database username and password cannot be empty!")
    return username, password


def print_settings(profile):
    print()
    print("Connection settings:")
    print(f"  Host: {profile.host}")
    print(f"  Port: {profile.port}")
    print(f"  Database: {profile.database}")
    print(f"  Username: {profile.username}")
    print(f"  Password: {profile.password}")
    print(f"  Engine: {profile.engine}")


def cmd_rds(args):
    ctx, facade = connect(args)
    db = select_database(facade, args.db)
    if not db["endpoint"]:
        raise NotFound(f"Database {db['identifier']} has no endpoint yet (status: {db['status']})")
    bastion_id = select_bastion(facade, db, args.bastion)
    username, password = resolve_credentials(facade, db)

    profile = ConnectionProfile(
        host=db["endpoint"],
        port=int(db["port"]),
        database=db["db_name"],
        username=username,
        password=password,
        engine=db["engine"],
    )

    if bastion_id:
        manager = SessionManager(ctx)
        local_port = args.local_port or default_local_port(db["port"])
        replace = False
        existing = manager.status(db["identifier"])
        if existing:
            print_warning(f"Port forwarding already running (PID: {existing.pid})")
            replace = confirm("Kill existing session and start new one?")
        session = manager.start(
            db["identifier"], bastion_id, db["endpoint"], db["port"], local_port, replace=replace
        )
        if session.local_port is None:
            raise InconsistentState(
                f"Existing port forwarding for {db['identifier']} is not on localhost:{local_port}",
                f"Stop it with: aws-connect tunnel stop {db['identifier']}\n"
                "or answer y to 'Kill existing session and start new one?'",
            )
        profile = profile.for_tunnel(session.local_port)
        print_info(f"Stop the tunnel later with: aws-connect tunnel stop {db['identifier']}")
    else:
        print_info("Using direct connection (RDS is publicly accessible)")

    if args.settings:
        print_settings(profile)
        return 0
    return run_client(profile)


def configure_ssm(facade, instance_id):
    """
    Offer to grant an instance SSM permissions.

    Returns:
        bool: True to continue with an SSM session, False to fall back to SSH
    """
    print_info("This will:")
    print("  1. Create an IAM role with SSM permissions")
    print("  2. Create an instance profile")
    print("  3. Associate it with the instance (replacing any existing profile)")
    if not confirm("Do you want to proceed with SSM configuration?"):
        print_info("SSM configuration cancelled.")
        print("1) Use another connection method")
        print("2) Exit")
        if choose("Select option", 2) == 0:
            return False
        raise UserCancelled("Exiting. Please configure SSM manually and try again.")

    try:
        SsmSetup(facade).configure(
            instance_id,
            confirm_replace=lambda: confirm("Replace the existing instance profile?", default=True),
        )
    except UserCancelled:
        raise
    except AwsConnectError as e:
        print_error(f"SSM configuration failed: {e.message}")
        if e.remediation:
            print(e.remediation)
        print("1) Try connecting anyway (SSM may still work)")
        print("2) Use another connection method")
        print("3) Exit")
        action = choose("Select option", 3)
        if action == 1:
            return False
        if action == 2:
            raise
        return True

    print_success("SSM configuration completed successfully!")
    info = facade.ssm_instance_info(instance_id)
    if not info or info.get("PingStatus") != "Online":
        print_warning("The SSM agent has not registered yet. This can take a few minutes.")
        if not confirm("Try connecting anyway?", default=True):
            raise UserCancelled("Exiting. Please wait a few minutes and try again.")
    return True


def connect_via_ssh(facade, instance_id):
    """Interactive SSH to an instance by password or private key."""
    print_info("SSH Connection Setup")
    try:
        details = facade.instance_details(instance_id) or {}
    except ClientError as e:
        print_warning(f"Could not fetch instance details: {e}")
        details = {}
    public_ip = details.get("public_ip")
    private_ip = details.get("private_ip")
    if public_ip:
        print(f"  Public IP: {public_ip}")
    if private_ip:
        print(f"  Private IP: {private_ip}")

    default_ip = public_ip or private_ip
    if default_ip:
        host = read_input(f"Enter IP address to connect to (press Enter for {default_ip}): ") or default_ip
    else:
        host = read_input("Enter IP address to connect to: ")
    if not host:
        raise UserCancelled("IP address is required!")

    port = read_input("Enter SSH port (press Enter for default 22): ") or "22"
    if not port.isdigit():
        raise AwsConnectError(f"Invalid SSH port: '{port}'")

    platform = (details.get("platform") or "").lower()
    default_user = "Administrator" if platform.startswith("windows") else "ec2-user"
    user = read_input(f"Enter SSH username (press Enter for default '{default_user}'): ") or default_user

    print_info("SSH Authentication Method:")
    print("1) Password")
    print("2) Private Key (PEM file)")
    if choose("Select authentication method", 2) == 0:
        print_warning("SSH password authentication may require additional configuration on the server.")
        if command_exists("sshpass"):
            password = getpass.getpass("Enter SSH password: ")
            if not password:
                raise UserCancelled("Password is required!")
            return run_ssh(ssh_command(host, user, port, use_sshpass=True), password=password)
        print_info("'sshpass' is not installed. You'll be prompted for the password by ssh.")
        return run_ssh(ssh_command(host, user, port))

    key_name = details.get("key_name")
    suggested = os.path.expanduser(f"~/.ssh/{key_name}.pem") if key_name else None
    if suggested:
        print_info(f"Instance key pair: {key_name}")
        key_file = read_input(f"Enter path to private key file (press Enter for {suggested}): ") or suggested
    else:
        key_file = read_input("Enter path to private key file: ")
    if not key_file:
        raise UserCancelled("Private key file path is required!")
    key_file = os.path.abspath(os.path.expanduser(key_file))
    if not os.path.isfile(key_file):
        raise NotFound(f"Private key file not found: {key_file}")
    if not key_permissions_ok(key_file):
        print_warning("Private key file permissions should be 600 or 400.")
        if confirm("Fix permissions?", default=True):
            os.chmod(key_file, 0o600)
            print_success("Permissions fixed")
    return run_ssh(ssh_command(host, user, port, key_file=key_file))


def cmd_ec2(args):
    ctx, facade = connect(args)
    print_info("Step 2: Select EC2 Instance")
    instance_id = args.instance
    if not instance_id:
        instances = facade.list_instances()
        if not instances:
            raise NotFound(f"No EC2 instances found in region: {ctx.region}")
        for number, instance in enumerate(instances, 1):
            print(
                f"{number:<3} {instance['instance_id']:<20} {instance['name']:<30} "
                f"{instance['state']:<10} {instance['private_ip']}"
            )
        instance_id = instances[choose("Select instance number", len(instances))]["instance_id"]

    print_info("Step 3: Connect via SSM")
    info = facade.ssm_instance_info(instance_id)
    if not info:
        print_warning("Instance is not SSM-managed or SSM agent is not running.")
        print_info("To use SSM, the instance needs:")
        print("  1. SSM Agent installed and running")
        print("  2. IAM instance profile with SSM permissions")
        print("  3. Network connectivity to SSM service")
        print()
        print("1) Configure SSM for this instance (creates IAM role and instance profile)")
        print("2) Use another connection method (SSH)")
        print("3) Exit")
        action = choose("Select option", 3)
        if action == 2:
            raise UserCancelled("Exiting. Please configure SSM and try again.")
        if action == 1 or not configure_ssm(facade, instance_id):
            return connect_via_ssh(facade, instance_id)
    elif info.get("PingStatus") != "Online":
        print_warning(f"Instance is SSM-managed but status is: {info.get('PingStatus')}")
        if not confirm("Continue anyway?", default=True):
            raise UserCancelled("Exiting. Please wait for the instance to come online and try again.")
    else:
        print_success("Instance is SSM-managed and online")
        print(f"  Platform: {info.get('PlatformType')}")
    return ssm_shell(ctx, instance_id)


def cmd_ecs(args):
    ctx, facade = connect(args)
    print_info("Step 2: Select ECS Cluster")
    cluster = args.cluster
    if not cluster:
        clusters = facade.list_clusters()
        if not clusters:
            raise NotFound(f"No ECS clusters found in region: {ctx.region}")
        for number, name in enumerate(clusters, 1):
            print(f"{number:2}. {name}")
        cluster = clusters[choose("Select cluster", len(clusters))]

    service = args.service
    if not service:
        services = facade.list_services(cluster)
        if services:
            print_info("Select ECS Service")
            print(f"{1:2}. All tasks in cluster")
            for number, name in enumerate(services, 2):
                print(f"{number:2}. {name}")
            index = choose("Select service", len(services) + 1)
            service = services[index - 1] if index else None

    print_info("Step 3: Select Task")
    task_arns = facade.list_tasks(cluster, service)
    if not task_arns:
        raise NotFound(f"No running tasks found in cluster {cluster}")
    tasks = [facade.describe_task(cluster, arn) for arn in task_arns]
    tasks = [task for task in tasks if task]
    if not tasks:
        raise NotFound(f"No running tasks found in cluster {cluster}")
    for number, task in enumerate(tasks, 1):
        print(f"{number:<3} {task['task_id']:<40} {task['status']:<10} {', '.join(task['containers'])}")
    task = tasks[choose("Select task", len(tasks))] if len(tasks) > 1 else tasks[0]

    print_info("Step 4: Connect to Task")
    if not task["exec_enabled"]:
        raise AwsConnectError(
            f"ECS Exec is not enabled for task {task['task_id']}",
            "Enable it on the service and redeploy:\n"
            f"  aws ecs update-service --cluster {cluster} --service <service-name> "
            "--enable-execute-command --force-new-deployment",
        )
    containers = task["containers"]
    if args.container:
        container = args.container
    elif len(containers) == 1:
        container = containers[0]
    else:
        for number, name in enumerate(containers, 1):
            print(f"{number:2}. {name}")
        container = containers[choose("Select container", len(containers))]
    return ecs_exec(ctx, cluster, task["task_arn"], container, args.command)


def cmd_bastion_create(args):
    ctx, facade = connect(args)
    manager = BastionManager(facade)
    instance_id = manager.create(args.db)
    try:
        manager.await_ready(instance_id)
    except ReadinessTimeout as e:
        if not e.soft:
            raise
        print_warning(str(e))
        print_info(e.remediation)
    print(instance_id)
    return 0


def cmd_tunnel_start(args):
    ctx = choose_credentials(args)
    manager = SessionManager(ctx)
    local_port = args.local_port or default_local_port(args.port)
    session = manager.start(args.db, args.bastion, args.host, args.port, local_port, replace=args.replace)
    print(f"  PID: {session.pid}")
    print(f"  Local port: {session.local_port or 'unknown'}")
    print(f"  Log: {session.log_path}")
    return 0


def cmd_tunnel_stop(args):
    manager = SessionManager(CredentialContext(region=args.region or config.AWS_REGION))
    if manager.stop(args.db):
        print_success(f"Port forwarding for {args.db} stopped")
    else:
        print_info(f"No port forwarding running for {args.db}")
    return 0


def cmd_tunnel_list(args):
    manager = SessionManager(CredentialContext(region=args.region or config.AWS_REGION))
    sessions = manager.list_sessions()
    if not sessions:
        print_info("No port forwarding sessions running")
        return 0
    for session in sessions:
        print(f"{session.db_identifier:<40} Running (PID: {session.pid})  log: {session.log_path}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="aws-connect",
        description="Connect to RDS databases, EC2 instances and ECS tasks through SSM",
        epilog="Examples:\n"
        "  aws-connect rds                                  # Interactive database wizard\n"
        "  aws-connect --vault prod rds --db orders-db      # Use an aws-vault profile\n"
        "  aws-connect bastion create orders-db             # Create a bastion and wait for SSM\n"
        "  aws-connect tunnel stop orders-db                # Stop a background tunnel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", "-d", action="store_true", default=config.DEBUG,
                        help="Enable debug logging (or set AWS_CONNECT_DEBUG=1)")
    auth = parser.add_mutually_exclusive_group()
    auth.add_argument("--profile", help="AWS profile from ~/.aws/config or ~/.aws/credentials")
    auth.add_argument("--vault", metavar="PROFILE", help="aws-vault profile")
    parser.add_argument("--region", help=f"AWS region (default: {config.AWS_REGION})")

    commands = parser.add_subparsers(dest="command", required=True)

    rds = commands.add_parser("rds", help="Connect to an RDS database")
    rds.add_argument("--db", help="Database identifier (skips the selection menu)")
    rds.add_argument("--bastion", help="Bastion instance id (skips bastion discovery)")
    rds.add_argument("--local-port", type=int, help="Local tunnel port (default: derived from DB port)")
    rds.add_argument("--settings", action="store_true",
                     help="Print connection settings instead of launching mysql/psql")
    rds.set_defaults(func=cmd_rds)

    ec2 = commands.add_parser("ec2", help="Open an SSM shell on an EC2 instance")
    ec2.add_argument("--instance", help="Instance id (skips the selection menu)")
    ec2.set_defaults(func=cmd_ec2)

    ecs = commands.add_parser("ecs", help="Exec into a running ECS task")
    ecs.add_argument("--cluster", help="Cluster name")
    ecs.add_argument("--service", help="Only list tasks of this service")
    ecs.add_argument("--container", help="Container name")
    ecs.add_argument("--command", default="/bin/sh", help="Command to run (default: /bin/sh)")
    ecs.set_defaults(func=cmd_ecs)

    bastion = commands.add_parser("bastion", help="Manage bastion hosts")
    bastion_commands = bastion.add_subparsers(dest="bastion_command", required=True)
    create = bastion_commands.add_parser("create", help="Create a bastion host for a database")
    create.add_argument("db", help="Database identifier")
    create.set_defaults(func=cmd_bastion_create)

    tunnel = commands.add_parser("tunnel", help="Manage background port forwarding")
    tunnel_commands = tunnel.add_subparsers(dest="tunnel_command", required=True)
    start = tunnel_commands.add_parser("start", help="Start port forwarding through a bastion")
    start.add_argument("db", help="Database identifier (names the PID and log files)")
    start.add_argument("--bastion", required=True, help="Bastion instance id")
    start.add_argument("--host", required=True, help="Database endpoint")
    start.add_argument("--port", type=int, required=True, help="Database port")
    start.add_argument("--local-port", type=int, help="Local port (default: derived from --port)")
    start.add_argument("--replace", action="store_true", help="Replace a running session")
    start.set_defaults(func=cmd_tunnel_start)
    stop = tunnel_commands.add_parser("stop", help="Stop port forwarding for a database")
    stop.add_argument("db", help="Database identifier")
    stop.set_defaults(func=cmd_tunnel_stop)
    listing = tunnel_commands.add_parser("list", help="List running port forwarding sessions")
    listing.set_defaults(func=cmd_tunnel_list)
    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        code = args.func(args)
    except AwsConnectError as e:
        print_error(e.message)
        if e.remediation:
            print(e.remediation, file=sys.stderr)
        sys.exit(e.exit_code)
    except ClientError as e:
        if is_access_denied(e):
            print_error(f"Permission denied: {e}")
            sys.exit(PermissionDenied.exit_code)
        print_error(f"AWS request failed: {e}")
        sys.exit(1)
    except BotoCoreError as e:
        print_error(f"AWS connection failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print()
        print_info("Interrupted")
        sys.exit(130)
    sys.exit(code or 0)


if __name__ == "__main__":
    main()
