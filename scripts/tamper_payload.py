import json
import sys
from pathlib import Path

def main():
    if len(sys.argv) != 2:
        print("Usage: tamper_payload.py <state.committed.json>")
        raise SystemExit(2)

    p = Path(sys.argv[1])
    obj = json.loads(p.read_text(encoding="utf-8"))
    ct = bytearray(bytes.fromhex(obj["payload"]["ciphertextHex"]))
    if not ct:
        print("Ciphertext is empty; nothing to tamper with.")
        raise SystemExit(2)

    # Flip the lowest bit of the first ciphertext byte. The GCM tag no longer
    # verifies, so decryption must fail closed.
    ct[0] ^= 0x01
    obj["payload"]["ciphertextHex"] = ct.hex()
    p.write_text(json.dumps(obj, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Tampered 1 ciphertext byte in {p}")

if __name__ == "__main__":
    main()
