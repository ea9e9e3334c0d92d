# scripts/gen_synthetic_chart.py
import numpy as np, tifffile, pathlib, argparse

parser = argparse.ArgumentParser()
parser.add_argument("outdir", type=pathlib.Path)
parser.add_argument("--black", type=int, default=256)
parser.add_argument("--sat", type=int, default=4095)
parser.add_argument("--noise", type=float, default=20.0)
parser.add_argument("--rows", type=int, default=7)
parser.add_argument("--cols", type=int, default=11)
args = parser.parse_args()

args.outdir.mkdir(parents=True, exist_ok=True)
rng = np.random.default_rng(0)
h, w = 700, 1100  # bayer plane; the chart fills the central 80 %
y0, x0 = h // 10, w // 10
cell_h, cell_w = (h - 2 * y0) // args.rows, (w - 2 * x0) // args.cols
for n, iso in enumerate((100, 200, 400, 800)):
    plane = np.full((h, w), float(args.black))
    for j in range(args.rows):
        for i in range(args.cols):
            k = j * args.cols + i
            level = 0.7 * 2.0 ** (-k / 4.0) * 2.0 ** (n - 3)  # quarter-EV steps
            ys, xs = y0 + j * cell_h, x0 + i * cell_w
            plane[ys : ys + cell_h, xs : xs + cell_w] = args.black + level * (args.sat - args.black)
    mosaic = np.kron(plane, np.ones((2, 2))) + rng.normal(0.0, args.noise, (2 * h, 2 * w))
    img = np.clip(np.round(mosaic), 0, args.sat).astype(np.uint16)
    tifffile.imwrite(args.outdir / f"chart_ISO{iso}.tiff", img)

corners = [(2 * x0, 2 * y0), (2 * x0, 2 * (h - y0)), (2 * (w - x0), 2 * (h - y0)), (2 * (w - x0), 2 * y0)]
print("Synthetic charts written:", args.outdir)
print("--chart-corners", ",".join(f"{v}" for p in corners for v in p))
