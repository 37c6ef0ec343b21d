from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

ID_PARAM = "id"


def build_share_link(base_url, peer_id):
    """Link that pre-fills peer_id as the dial target when opened."""
    parts = urlsplit(base_url)
    query = parse_qs(parts.query, keep_blank_values=True)
    query[ID_PARAM] = [peer_id]
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def dial_target_from_link(url):
    """Peer id carried by a share link, or None."""
    values = parse_qs(urlsplit(url).query).get(ID_PARAM)
    if not values:
        return None
    target = values[0].strip()
    return target or None
