#!/usr/bin/env python3
"""
Merkle Claims: сборка мерклового дерева для airdrop-дистрибьюторов с индексом клейма
(лист = keccak256(keccak256(abi.encode(address account, uint256 index, uint256 amount))),
пары на уровне сортируются, непарный узел поднимается на уровень выше без дублирования).
Совместимо с OpenZeppelin MerkleProof.verify: корень публикуется в контракте,
держатель присылает (index, amount, proof).
"""
import argparse, csv, json, logging, os, re, sys
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

from eth_abi import encode as abi_encode
from eth_utils import (
    decode_hex,
    encode_hex,
    is_hex_address,
    keccak,
    to_canonical_address,
    to_checksum_address,
)

log = logging.getLogger("merkle_claims")

LEAF_ENCODING = ["address", "uint256", "uint256"]
UINT256_MAX = 2**256 - 1

DEFAULT_CLAIMS_JSON = "merkle-tree-data.json"
DEFAULT_VERIFICATION_JSON = "merkle-tree-verification.json"
DEFAULT_CLAIMS_CSV = "claims.csv"

UINT_RE = re.compile(r"[0-9]+")

Address = Union[str, bytes]
Digest = Union[str, bytes]


# ---------- Errors ----------
class ClaimTreeError(ValueError):
    """Base class for everything the claim tree raises."""


class EncodingError(ClaimTreeError):
    """A record field does not fit its ABI type."""


class EmptyTreeError(ClaimTreeError):
    pass


class IndexOutOfRangeError(ClaimTreeError, IndexError):
    pass


class NotFoundError(ClaimTreeError, LookupError):
    """No claim for the requested address."""


class DuplicateClaimError(ClaimTreeError):
    """Two records share an address or an index."""


# ---------- Keccak256 ----------
def keccak256(data: bytes) -> bytes:
    # Ethereum keccak, not hashlib.sha3_256
    return keccak(primitive=data)


def node_hash(a: bytes, b: bytes) -> bytes:
    """Sorted-pair hash: keccak256(min(a, b) || max(a, b))."""
    if b < a:
        a, b = b, a
    return keccak256(a + b)


def leaf_hash(record) -> bytes:
    """Double hash keeps leaves out of the internal-node domain."""
    return keccak256(keccak256(encode_record(record)))


# ---------- Codec ----------
class Record(NamedTuple):
    address: Address
    index: int
    amount: int


def address_bytes(address: Address) -> bytes:
    if isinstance(address, (bytes, bytearray)):
        if len(address) != 20:
            raise EncodingError(f"address must be 20 bytes, got {len(address)}")
        return bytes(address)
    if not isinstance(address, str) or not address.startswith("0x") or not is_hex_address(address):
        raise EncodingError(f"Invalid EVM address: {address!r}")
    return to_canonical_address(address)


def address_text(address: Address) -> str:
    if isinstance(address, str):
        return address
    return to_checksum_address(address_bytes(address))


def _uint256(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise EncodingError(f"{name} out of uint256 range: {value}")
    return value


def encode_record(record) -> bytes:
    """
    abi.encode(address, uint256, uint256): three 32-byte words, the address
    left-padded with 12 zero bytes, integers big-endian.
    """
    try:
        address, index, amount = record
    except (TypeError, ValueError) as e:
        raise EncodingError(f"record must be (address, index, amount), got {record!r}") from e
    return abi_encode(LEAF_ENCODING, [
        address_bytes(address),
        _uint256("index", index),
        _uint256("amount", amount),
    ])


def _int_field(name: str, value: Any) -> int:
    if isinstance(value, str):
        v = value.strip()
        if not UINT_RE.fullmatch(v):
            raise EncodingError(f"{name} must be a non-negative integer string, got: {value!r}")
        return int(v)
    return _uint256(name, value)


def _as_record(record) -> Record:
    if isinstance(record, Record):
        return record
    try:
        return Record(*record)
    except TypeError as e:
        raise EncodingError(f"record must be (address, index, amount), got {record!r}") from e


def normalize_record(address: Address, index: Any, amount: Any) -> Record:
    """Build a Record from loosely typed input (CSV cells, JSON strings)."""
    if isinstance(address, str):
        address = address.strip()
    address_bytes(address)
    return Record(address, _uint256("index", _int_field("index", index)),
                  _uint256("amount", _int_field("amount", amount)))


# ---------- Tree ----------
def build_levels(leaves: Sequence[bytes]) -> List[List[bytes]]:
    """
    levels[0] = leaves, levels[-1] = [root]. An unpaired last node is carried
    up unchanged, never hashed with itself.
    """
    if not leaves:
        raise EmptyTreeError("No leaves to build tree")
    levels = [list(leaves)]
    cur = levels[0]
    while len(cur) > 1:
        nxt = [node_hash(cur[i], cur[i+1]) for i in range(0, len(cur) - 1, 2)]
        if len(cur) % 2:
            nxt.append(cur[-1])
        levels.append(nxt)
        cur = nxt
    return levels


class MerkleTree:
    """
    Immutable claim tree. Leaves keep the insertion order of the records;
    Record.index is stored data only and plays no part in positions.
    """

    def __init__(self, records: Sequence[Record], levels: Sequence[Sequence[bytes]]):
        self._records = tuple(records)
        self._levels = tuple(tuple(level) for level in levels)
        self._positions: Dict[bytes, int] = {}
        seen_indices = set()
        for pos, rec in enumerate(self._records):
            key = address_bytes(rec.address)
            if key in self._positions:
                raise DuplicateClaimError(f"Duplicate address: {address_text(rec.address)}")
            if rec.index in seen_indices:
                raise DuplicateClaimError(f"Duplicate index: {rec.index}")
            seen_indices.add(rec.index)
            self._positions[key] = pos

    @classmethod
    def of(cls, records: Iterable) -> "MerkleTree":
        recs = [_as_record(r) for r in records]
        return cls(recs, build_levels([leaf_hash(r) for r in recs]))

    def __len__(self) -> int:
        return len(self._records)

    @property
    def root(self) -> bytes:
        return self._levels[-1][0]

    @property
    def root_hex(self) -> str:
        return encode_hex(self.root)

    @property
    def depth(self) -> int:
        return len(self._levels) - 1

    def entries(self) -> Iterator[Tuple[int, Record]]:
        return iter(enumerate(self._records))

    def record_at(self, pos: int) -> Record:
        self._check_position(pos)
        return self._records[pos]

    def leaf_at(self, pos: int) -> bytes:
        self._check_position(pos)
        return self._levels[0][pos]

    def position_of(self, address: Address) -> int:
        try:
            return self._positions[address_bytes(address)]
        except KeyError:
            raise NotFoundError(f"No claim found for address {address_text(address)}") from None

    def get_proof(self, pos: int) -> List[bytes]:
        """Sibling hashes from the leaf up to, not including, the root."""
        self._check_position(pos)
        proof = []
        for level in self._levels[:-1]:
            sib = pos ^ 1
            # carried-up node: nothing to emit at this level
            if sib < len(level):
                proof.append(level[sib])
            pos //= 2
        return proof

    def validate(self) -> None:
        levels = build_levels([leaf_hash(r) for r in self._records])
        if tuple(tuple(level) for level in levels) != self._levels:
            raise ClaimTreeError("Merkle tree does not match its records")

    def _check_position(self, pos: Any) -> None:
        if isinstance(pos, bool) or not isinstance(pos, int) or not 0 <= pos < len(self._records):
            raise IndexOutOfRangeError(f"Leaf position {pos!r} out of range for {len(self._records)} leaves")


def build_tree(records: Iterable) -> Tuple[bytes, MerkleTree]:
    tree = MerkleTree.of(records)
    return tree.root, tree


def get_proof(tree: MerkleTree, pos: int) -> List[bytes]:
    return tree.get_proof(pos)


# ---------- Verification ----------
def _digest(value: Digest) -> bytes:
    if isinstance(value, str):
        value = decode_hex(value)
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValueError(f"not a 32-byte digest: {value!r}")
    return bytes(value)


def verify_leaf(leaf: Digest, proof: Sequence[Digest], root: Digest) -> bool:
    try:
        h = _digest(leaf)
        for sib in proof:
            h = node_hash(h, _digest(sib))
        return h == _digest(root)
    except (TypeError, ValueError):
        return False


def verify(record, proof: Sequence[Digest], root: Digest) -> bool:
    """Never raises: an unencodable record or malformed proof is just invalid."""
    try:
        leaf = leaf_hash(record)
    except EncodingError:
        return False
    return verify_leaf(leaf, proof, root)


# ---------- Claims export ----------
def export_claims(tree: MerkleTree) -> Dict[str, Any]:
    claims: Dict[str, dict] = {}
    token_total = 0
    for pos, rec in tree.entries():
        token_total += rec.amount
        claims[address_text(rec.address)] = {
            "index": rec.index,
            "amount": str(rec.amount),
            "proof": [encode_hex(p) for p in tree.get_proof(pos)],
        }
    return {"merkleRoot": tree.root_hex, "tokenTotal": str(token_total), "claims": claims}


def export_verification(tree: MerkleTree) -> Dict[str, Any]:
    return {
        "root": tree.root_hex,
        "format": list(LEAF_ENCODING),
        "values": [[address_text(r.address), str(r.index), str(r.amount)] for _, r in tree.entries()],
    }


def load_verification(doc: Dict[str, Any]) -> MerkleTree:
    """Rebuild the tree from a verification document and check its root."""
    if not isinstance(doc, dict):
        raise ClaimTreeError(f"Verification document must be a JSON object, got {type(doc).__name__}")
    if doc.get("format") != LEAF_ENCODING:
        raise ClaimTreeError(f"Unsupported leaf format: {doc.get('format')!r}")
    try:
        records = [normalize_record(*v) for v in doc["values"]]
    except (KeyError, TypeError) as e:
        raise ClaimTreeError(f"Malformed verification document: {e}") from e
    tree = MerkleTree.of(records)
    if tree.root_hex.lower() != str(doc.get("root", "")).lower():
        raise ClaimTreeError(f"Root mismatch: expected {doc.get('root')}, rebuilt {tree.root_hex}")
    return tree


def get_claim(claims_doc: Dict[str, Any], address: str) -> Dict[str, Any]:
    claims = claims_doc.get("claims", {}) if isinstance(claims_doc, dict) else None
    if not isinstance(claims, dict):
        raise ClaimTreeError("Claims document must be a JSON object with a 'claims' mapping")
    key = address if address in claims else next(
        (k for k in claims if k.lower() == address.lower()), None)
    if key is None:
        raise NotFoundError(f"No claim found for address {address}")
    c = claims[key]
    try:
        return {"address": key, "index": c["index"], "amount": c["amount"], "proof": c["proof"]}
    except (KeyError, TypeError) as e:
        raise ClaimTreeError(f"Malformed claim for {key}: missing {e}") from e


def claims_root(claims_doc: Dict[str, Any]) -> str:
    root = claims_doc.get("merkleRoot") if isinstance(claims_doc, dict) else None
    if not isinstance(root, str):
        raise ClaimTreeError("Claims document has no 'merkleRoot'")
    return root


def proof_filename(address: str) -> str:
    return f"proof-{address[:8]}.json"


# ---------- I/O ----------
def load_csv(path: str) -> List[Record]:
    out = []
    with open(path, newline="", encoding="utf-8") as f:
        rdr = csv.DictReader(f)
        if not rdr.fieldnames or "address" not in rdr.fieldnames or "amount" not in rdr.fieldnames:
            raise ClaimTreeError("CSV needs header: address,amount[,index]")
        has_index = "index" in rdr.fieldnames
        for r in rdr:
            a = (r.get("address") or "").strip()
            v = (r.get("amount") or "").strip()
            if not (a and v):
                log.debug("skipping incomplete row %d", rdr.line_num)
                continue
            i = (r.get("index") or "").strip() if has_index else len(out)
            out.append(normalize_record(a, i, v))
    if not out:
        raise ClaimTreeError("No valid rows in CSV")
    return out


def save_json(obj, path: str):
    with open(path, "w") as f:
        json.dump(obj, f, indent=2)


def load_json(path: str):
    with open(path, "r") as f:
        return json.load(f)


def save_claims_csv(claims: Dict[str, dict], path: str):
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["address", "index", "amount", "proof"])
        for addr, c in claims.items():
            w.writerow([addr, c["index"], c["amount"], json.dumps(c["proof"])])


# ---------- Commands ----------
SAMPLE_ROWS = [
    ("0x1234567890123456789012345678901234567890", 0, 100),
    ("0x2345678901234567890123456789012345678901", 1, 200),
    ("0x3456789012345678901234567890123456789012", 2, 300),
    ("0x4567890123456789012345678901234567890123", 3, 400),
]


def cmd_sample(args) -> int:
    with open(args.out, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["address", "index", "amount"])
        w.writerows(SAMPLE_ROWS)
    print(f"Sample CSV written to {args.out}")
    return 0


def cmd_build(args) -> int:
    records = load_csv(args.csv)
    log.info("building tree from %d records", len(records))
    root, tree = build_tree(records)
    master = export_claims(tree)
    os.makedirs(args.out_dir, exist_ok=True)
    save_json(master, os.path.join(args.out_dir, DEFAULT_CLAIMS_JSON))
    save_json(export_verification(tree), os.path.join(args.out_dir, DEFAULT_VERIFICATION_JSON))
    save_claims_csv(master["claims"], os.path.join(args.out_dir, DEFAULT_CLAIMS_CSV))
    print("Merkle root:", encode_hex(root))
    print("Token total:", master["tokenTotal"])
    print(f"Wrote {DEFAULT_CLAIMS_JSON}, {DEFAULT_VERIFICATION_JSON} and {DEFAULT_CLAIMS_CSV} to {args.out_dir}")
    return 0


def cmd_proof(args) -> int:
    claim = get_claim(load_json(args.json), args.address)
    print(json.dumps(claim, indent=2))
    if args.save:
        name = proof_filename(claim["address"])
        save_json(claim, name)
        print(f"Proof saved to {name}")
    return 0


def cmd_verify(args) -> int:
    master = load_json(args.json)
    root = claims_root(master)
    claim = get_claim(master, args.address)
    rec = normalize_record(claim["address"], claim["index"], claim["amount"])
    if args.amount is not None and _int_field("amount", args.amount) != rec.amount:
        print("Amount mismatch. Expected:", claim["amount"])
        return 1
    ok = verify(rec, claim["proof"], root)
    print("Valid proof:", ok)
    return 0 if ok else 1


def cmd_check(args) -> int:
    tree = load_verification(load_json(args.json))
    tree.validate()
    print(f"Root confirmed: {tree.root_hex} ({len(tree)} leaves)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="merkle-claims", description="Merkle Claims (sorted pairs, indexed claims)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("sample", help="write sample CSV")
    p.add_argument("--out", default="sample.csv")
    p.set_defaults(func=cmd_sample)

    p = sub.add_parser("build", help="build claims & verification JSON from CSV")
    p.add_argument("--csv", required=True)
    p.add_argument("--out-dir", default=".")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("proof", help="print proof JSON for an address")
    p.add_argument("--json", default=DEFAULT_CLAIMS_JSON)
    p.add_argument("--address", required=True)
    p.add_argument("--save", action="store_true", help="write proof-<address>.json")
    p.set_defaults(func=cmd_proof)

    p = sub.add_parser("verify", help="verify a claim against the claims JSON")
    p.add_argument("--json", default=DEFAULT_CLAIMS_JSON)
    p.add_argument("--address", required=True)
    p.add_argument("--amount", help="expected amount; fails on mismatch")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("check", help="rebuild the tree from the verification JSON")
    p.add_argument("--json", default=DEFAULT_VERIFICATION_JSON)
    p.set_defaults(func=cmd_check)

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    try:
        return args.func(args)
    except ClaimTreeError as e:
        log.error("%s", e)
    except (OSError, json.JSONDecodeError) as e:
        log.error("I/O error: %s", e)
    return 1


if __name__ == "__main__":
    sys.exit(main())
