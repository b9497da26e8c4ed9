# mysql_sync/error_parser.py

def parse_mysql_error(stderr: str) -> str:
    """
    Parses the stderr output of mysql, mysqldump or docker and returns a human-readable summary.
    """
    stderr = (stderr or "").lower()

    if "you need (at least one of) the" in stderr:
        return "Privilege Error: the user lacks a privilege required for a consistent dump (e.g. PROCESS or EVENT)."
    if "access denied" in stderr:
        return "Authentication Error: the user name or password was rejected."
    if "unknown database" in stderr:
        return "Database Error: the requested database does not exist."
    if "unknown mysql server host" in stderr or "name or service not known" in stderr:
        return "Connection Error: the host name could not be resolved. Check the server address."
    if "can't connect to mysql server" in stderr or "connection refused" in stderr:
        return "Connection Error: could not reach the database server. Check host and port."
    if "lost connection to mysql server" in stderr or "server has gone away" in stderr:
        return "Connection Error: the server closed the connection during the transfer."
    if "got a packet bigger than" in stderr:
        return "Server Error: a row exceeds max_allowed_packet on the target server."
    if "no such container" in stderr or "is not running" in stderr:
        return "Docker Error: the target container is not running."
    if "cannot connect to the docker daemon" in stderr:
        return "Docker Error: the Docker daemon is not reachable."
    if "error 1" in stderr and "at line" in stderr:
        return "Import Error: the target rejected a statement from the dump. See the run log for the failing line."
    if "not in gzip format" in stderr or "unexpected end of file" in stderr:
        return "Archive Error: the dump file is not a valid gzip archive."
    if "no space left on device" in stderr:
        return "Disk Error: no space left on the backup volume."

    return "Unknown Error: the command failed for an unidentified reason. Check the run log for the full output."
